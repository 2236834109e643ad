"""
Main Entry Point for the CT-HYB Simulation

Samples an Anderson impurity with a discrete bath and compares the mean
expansion order against exact diagonalization.
"""
import argparse
import logging
import os
import sys

import numpy as np

from ctqmc.ed_anderson import ED_Anderson
from ctqmc.measurements import MeasurementAccumulator
from ctqmc.operators import ConfigSpace
from ctqmc.params import SolverParams
from ctqmc.solver import HybridizationSolver


def _worm_kind(name):
    try:
        kind = ConfigSpace[name.upper()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"unknown worm kind {name!r}") from None
    if not kind.is_worm:
        raise argparse.ArgumentTypeError(f"{name!r} is not a worm kind")
    return kind


def parse_args(argv):
    parser = argparse.ArgumentParser(
        description="Hybridization-expansion CT-QMC for an Anderson impurity with a discrete bath.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--beta", type=float, default=2.0, help="Inverse temperature")
    parser.add_argument("--flavors", type=int, default=1, help="Number of impurity flavors")
    parser.add_argument("--onsite", type=float, default=0.0, help="Impurity level energy")
    parser.add_argument("--U", type=float, default=0.0, help="Density-density interaction between flavors")
    parser.add_argument("--bath", type=float, nargs="+", default=[-0.5, 0.5], help="Bath level energies per flavor")
    parser.add_argument("--hopping", type=float, default=0.8, help="Impurity-bath hopping")
    parser.add_argument("--n-tau", type=int, dest="n_tau", default=2000, help="Hybridization grid points")
    parser.add_argument("--sweeps", type=int, default=5000, help="Production sweeps")
    parser.add_argument("--therm", type=int, default=500, help="Thermalization sweeps")
    parser.add_argument("--max-window", type=int, dest="max_window", default=8, help="Maximum window size")
    parser.add_argument("--rank", type=int, default=1, help="Largest rank of joint pair insertion/removal")
    parser.add_argument("--worm", type=_worm_kind, nargs="*", default=[], help="Worm kinds to sample")
    parser.add_argument("--seed", type=int, default=None, help="Set RNG seed for reproducibility")
    parser.add_argument("--checkpoint", type=str, default=None, help="Write the sampler state here at the end")
    parser.add_argument("--resume", action="store_true", help="Load --checkpoint if present")
    parser.add_argument("--check", action="store_true", help="Cross-check the configuration after every sweep")
    parser.add_argument("--verbose", action="store_true", help="Log progress of the sampler")
    args = parser.parse_args(argv)
    validate_args(args)
    return args


def validate_args(args):
    """Reject obviously invalid inputs early to avoid cryptic runtime failures."""
    if args.beta <= 0:
        raise ValueError("--beta must be positive")
    if args.flavors < 1:
        raise ValueError("--flavors must be positive")
    if args.sweeps < 1:
        raise ValueError("--sweeps must be positive")
    if args.resume and args.checkpoint is None:
        raise ValueError("--resume needs --checkpoint")
    # ED works in 2**(flavors * (1 + bath levels)) states
    if args.flavors * (1 + len(args.bath)) > 12:
        raise ValueError("system too large for the exact diagonalization reference")


def build_reference(args):
    """Every flavor couples to its own copy of the bath levels."""
    n_bath = len(args.bath)
    bath_energies = np.tile(args.bath, args.flavors)
    hoppings = np.zeros((args.flavors, args.flavors * n_bath))
    for f in range(args.flavors):
        hoppings[f, f * n_bath:(f + 1) * n_bath] = args.hopping
    U = np.triu(np.full((args.flavors, args.flavors), args.U), k=1)
    return ED_Anderson(np.full(args.flavors, args.onsite), bath_energies, hoppings, U=U)


def main(argv):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    ed = build_reference(args)
    model = ed.impurity_model(args.beta, n_tau=args.n_tau)
    params = SolverParams(max_window_size=args.max_window, max_rank=args.rank,
                          worm_kinds=tuple(args.worm), n_therm_sweeps=args.therm,
                          check_consistency=args.check, verbose=args.verbose)
    solver = HybridizationSolver(model, params, seed=args.seed)
    if args.resume and os.path.exists(args.checkpoint):
        solver.load_state(args.checkpoint)
        print(f"Resumed from {args.checkpoint} after {solver.n_sweeps} sweeps")

    print(f"Starting CT-HYB: beta={args.beta}, flavors={args.flavors}, U={args.U}, "
          f"bath={args.bath}, V={args.hopping}")
    measure = MeasurementAccumulator(worm_kinds=params.worm_kinds)
    n = solver.run(args.sweeps, measure=measure)
    print(f"Sweeps: {n}, final state: {solver.status_string()}")

    qmc_order = measure.mean_expansion_order()
    ed_order = ed.mean_expansion_order(args.beta)
    print(f"QMC: <k> = {qmc_order:.4f}, <sign> = {measure.average_sign:.4f}")
    print(f"ED:  <k> = {ed_order:.4f}")
    print(f"Space fractions: { {s.value: round(x, 4) for s, x in measure.space_fractions().items()} }")

    if args.checkpoint is not None:
        solver.save_state(args.checkpoint)
        print(f"Checkpoint written to {args.checkpoint}")


if __name__ == "__main__":
    main(sys.argv[1:])
