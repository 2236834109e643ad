"""
Operator and Worm value types.

An operator string entry is (time, flavor, type); a worm is an ordered tuple
of such operators tagged with the configuration space it belongs to.

Worm layouts (operator type, time group):
- G1:            c_a(t0) c^dag_b(t1)
- EQUAL_TIME_G1: c_a(t0) c^dag_b(t0)
- TWO_TIME_G2:   c^dag_a(t0) c_b(t0) c^dag_c(t1) c_d(t1)
"""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import NamedTuple


class OperatorType(IntEnum):
    ANNIHILATION = 0
    CREATION = 1


class Operator(NamedTuple):
    time: float
    flavor: int
    type: OperatorType

    @property
    def is_creation(self):
        return self.type == OperatorType.CREATION

    def moved(self, time=None, flavor=None):
        """Copy with a new time and/or flavor."""
        return Operator(self.time if time is None else time,
                        self.flavor if flavor is None else flavor,
                        self.type)


class ConfigSpace(Enum):
    Z_FUNCTION = "Z_FUNCTION"
    G1 = "G1"
    EQUAL_TIME_G1 = "EQUAL_TIME_G1"
    TWO_TIME_G2 = "TWO_TIME_G2"

    @property
    def is_worm(self):
        return self is not ConfigSpace.Z_FUNCTION


WORM_LAYOUTS = {
    ConfigSpace.G1: ((OperatorType.ANNIHILATION, 0), (OperatorType.CREATION, 1)),
    ConfigSpace.EQUAL_TIME_G1: ((OperatorType.ANNIHILATION, 0), (OperatorType.CREATION, 0)),
    ConfigSpace.TWO_TIME_G2: ((OperatorType.CREATION, 0), (OperatorType.ANNIHILATION, 0),
                              (OperatorType.CREATION, 1), (OperatorType.ANNIHILATION, 1)),
}


def worm_num_times(kind):
    """Number of independent times of a worm kind."""
    return len({group for _, group in WORM_LAYOUTS[kind]})


@dataclass(frozen=True)
class Worm:
    kind: ConfigSpace
    operators: tuple

    def __post_init__(self):
        if not self.kind.is_worm:
            raise ValueError("Z_FUNCTION is not a worm kind")
        layout = WORM_LAYOUTS[self.kind]
        if len(self.operators) != len(layout):
            raise ValueError(f"{self.kind.value} worm needs {len(layout)} operators")
        for op, (op_type, _) in zip(self.operators, layout):
            if op.type != op_type:
                raise ValueError(f"{self.kind.value} worm operator types do not match its layout")

    @classmethod
    def build(cls, kind, times, flavors):
        """Build a worm from one time per time group and one flavor per operator."""
        ops = tuple(Operator(float(times[group]), int(flavor), op_type)
                    for (op_type, group), flavor in zip(WORM_LAYOUTS[kind], flavors))
        return cls(kind, ops)

    @property
    def flavors(self):
        return tuple(op.flavor for op in self.operators)

    def group_times(self):
        """Time of each time group, in group order."""
        times = {}
        for op, (_, group) in zip(self.operators, WORM_LAYOUTS[self.kind]):
            times.setdefault(group, op.time)
        return [times[g] for g in sorted(times)]

    def with_group_time(self, group, time):
        ops = tuple(op.moved(time=time) if g == group else op
                    for op, (_, g) in zip(self.operators, WORM_LAYOUTS[self.kind]))
        return Worm(self.kind, ops)

    def with_flavor(self, index, flavor):
        ops = tuple(op.moved(flavor=flavor) if i == index else op
                    for i, op in enumerate(self.operators))
        return Worm(self.kind, ops)

    def shifted(self, shift, beta):
        return Worm(self.kind, tuple(op.moved(time=(op.time + shift) % beta) for op in self.operators))

    def relabeled(self, mapping):
        return Worm(self.kind, tuple(op.moved(flavor=mapping.get(op.flavor, op.flavor))
                                     for op in self.operators))
