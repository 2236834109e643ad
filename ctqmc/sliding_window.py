"""
Sliding window trace evaluator.

The imaginary-time axis [0, beta) is cut into n_window equal segments. The
active window spans two adjacent segments [t_p, t_{p+2}) (the whole axis when
n_window == 1). Products of everything below the window (right stack) and
above it (left stack) are cached, so a local update only re-multiplies the
operators inside the window:

    Tr[ L_{p+2} W(t_p, t_{p+2}) R_p ] = Tr[ W (R_p L_{p+2}) ]

Moving the window by one segment pushes one product on one stack and pops
the other.
"""
from .extended import ScaledMatrix


def propagate(model, entries, lower, upper):
    """
    Time-ordered product over [lower, upper):
    exp(-(upper - t_m)H) O_m ... O_1 exp(-(t_1 - lower)H).

    entries must be sorted by ascending time.
    """
    mat = ScaledMatrix.identity(model.dim)
    last = lower
    for op in entries:
        mat = mat.scale_rows(model.propagator(op.time - last)).left_multiply(model.operator_matrix(op))
        last = op.time
    return mat.scale_rows(model.propagator(upper - last))


def compute_trace(model, entries):
    """Full trace over [0, beta) from scratch."""
    return propagate(model, entries, 0.0, model.beta).trace()


class SlidingWindow:
    def __init__(self, model):
        self.model = model
        self.beta = model.beta
        self.n_window = 1
        self.position = 0
        self.direction = 1
        self._right = [ScaledMatrix.identity(model.dim)]
        self._left = [ScaledMatrix.identity(model.dim)]
        self._contracted = ScaledMatrix.identity(model.dim)

    @property
    def span(self):
        """Number of segments covered by the window."""
        return 2 if self.n_window > 1 else 1

    @property
    def max_position(self):
        return self.n_window - self.span

    @property
    def position_right_edge(self):
        """Segment index of the window's lower (right, in tau-descending order) edge."""
        return self.position

    @property
    def num_moves_per_sweep(self):
        """Moves that take the window from position 0 to the top and back to 0."""
        return max(2 * self.max_position, 1)

    def edge(self, k):
        if k >= self.n_window:
            return self.beta
        return k * self.beta / self.n_window

    @property
    def lower(self):
        return self.edge(self.position)

    @property
    def upper(self):
        return self.edge(self.position + self.span)

    @property
    def length(self):
        return self.upper - self.lower

    def contains(self, time):
        return self.lower <= time < self.upper

    def _segment(self, config, k):
        lo, hi = self.edge(k), self.edge(k + 1)
        return propagate(self.model, config.entries(lo, hi), lo, hi)

    def set_window_size(self, n_window, config, position=0, direction=1):
        """Repartition into n_window segments and rebuild both stacks."""
        if n_window < 1:
            raise ValueError("window size must be positive")
        self.n_window = int(n_window)
        if not 0 <= position <= self.max_position:
            raise ValueError(f"window position {position} out of range [0, {self.max_position}]")
        self.position = position
        self.direction = 1 if direction >= 0 else -1

        identity = ScaledMatrix.identity(self.model.dim)
        self._right = [identity]
        for k in range(position):
            self._right.append(self._segment(config, k) @ self._right[-1])
        self._left = [identity]
        for k in range(self.n_window - 1, position + self.span - 1, -1):
            self._left.append(self._left[-1] @ self._segment(config, k))
        self._contract()

    def _contract(self):
        self._contracted = self._right[-1] @ self._left[-1]

    def move_to_next_position(self, config):
        """Advance the cursor by one segment, bouncing at both ends."""
        if self.max_position == 0:
            return
        if self.direction > 0 and self.position == self.max_position:
            self.direction = -1
        elif self.direction < 0 and self.position == 0:
            self.direction = 1

        if self.direction > 0:
            self._right.append(self._segment(config, self.position) @ self._right[-1])
            self._left.pop()
            self.position += 1
        else:
            self._left.append(self._left[-1] @ self._segment(config, self.position + self.span - 1))
            self._right.pop()
            self.position -= 1
        self._contract()

    def trace(self, window_entries):
        """Full trace, given the (sorted) operators that fall inside the window."""
        inner = propagate(self.model, window_entries, self.lower, self.upper)
        return inner.trace_with(self._contracted)

    def cache_state(self):
        """Copy of the cached stacks, used to verify rollback."""
        return ([(m.matrix.copy(), m.exponent) for m in self._right],
                [(m.matrix.copy(), m.exponent) for m in self._left],
                self.position, self.direction, self.n_window)
