"""
Impurity model collaborator: local Hamiltonian, hybridization function and
the Fock-space operators the trace is built from.

Fock states are bit strings, state = sum_f n_f * 2**f, with Jordan-Wigner
ordering by flavor index.
"""
import numpy as np
import scipy.linalg as la
from numba import jit
from scipy import sparse


@jit(nopython=True, cache=True)
def interpolate_hybridization(values, beta, row_times, row_flavors, col_times, col_flavors):
    """
    Evaluate F_{f_i g_j}(t_i - t'_j) for all pairs by linear interpolation on
    the uniform tau grid, using F(t) = -F(t + beta) for t < 0.
    """
    n_tau = values.shape[0] - 1
    n_rows = row_times.shape[0]
    n_cols = col_times.shape[0]
    out = np.empty((n_rows, n_cols))
    for i in range(n_rows):
        for j in range(n_cols):
            dt = row_times[i] - col_times[j]
            sign = 1.0
            if dt < 0.0:
                dt += beta
                sign = -1.0
            x = dt / beta * n_tau
            k = int(x)
            if k >= n_tau:
                k = n_tau - 1
            w = x - k
            f = row_flavors[i]
            g = col_flavors[j]
            out[i, j] = sign * ((1.0 - w) * values[k, f, g] + w * values[k + 1, f, g])
    return out


@jit(nopython=True, cache=True)
def find_root(parent, x):
    """Iterative Union-Find with path compression."""
    root = x
    while parent[root] != root:
        root = parent[root]
    while parent[x] != root:
        next_x = parent[x]
        parent[x] = root
        x = next_x
    return root


@jit(nopython=True, cache=True)
def connected_flavors(coupled):
    """Label each flavor with the root of its hybridization-coupled group."""
    n = coupled.shape[0]
    parent = np.arange(n)
    for f in range(n):
        for g in range(n):
            if coupled[f, g]:
                root_f = find_root(parent, f)
                root_g = find_root(parent, g)
                if root_f != root_g:
                    parent[root_f] = root_g
    labels = np.empty(n, dtype=np.int64)
    for f in range(n):
        labels[f] = find_root(parent, f)
    return labels


class HybridizationFunction:
    """
    Hybridization function F_{fg}(tau) tabulated on tau_k = k*beta/n_tau, k = 0..n_tau.

    F(tau) = sum_p V_fp V_gp exp(-eps_p tau) / (1 + exp(-beta eps_p)) for a
    discrete bath, positive on (0, beta) for a single level.
    """

    def __init__(self, beta, values):
        values = np.asarray(values, dtype=np.float64)
        if values.ndim != 3 or values.shape[1] != values.shape[2]:
            raise ValueError("hybridization values must have shape (n_tau + 1, n_flavors, n_flavors)")
        if values.shape[0] < 2:
            raise ValueError("hybridization grid needs at least two points")
        self.beta = float(beta)
        self.values = np.ascontiguousarray(values)
        self.n_flavors = values.shape[1]

    @classmethod
    def constant(cls, beta, n_flavors, value, n_tau=2):
        """F_{ff}(tau) = value on (0, beta), no inter-flavor coupling."""
        values = np.zeros((n_tau + 1, n_flavors, n_flavors))
        for f in range(n_flavors):
            values[:, f, f] = value
        return cls(beta, values)

    @classmethod
    def from_bath(cls, beta, bath_energies, hoppings, n_tau=2000):
        """
        Args:
            bath_energies: (n_bath,) bath level energies eps_p.
            hoppings: (n_flavors, n_bath) couplings V_fp.
        """
        eps = np.asarray(bath_energies, dtype=np.float64)
        V = np.atleast_2d(np.asarray(hoppings, dtype=np.float64))
        taus = np.linspace(0.0, beta, n_tau + 1)
        # exp(-eps tau)/(1+exp(-beta eps)) written to stay finite for either sign of eps
        g = np.empty((n_tau + 1, eps.size))
        for p, e in enumerate(eps):
            if e >= 0:
                g[:, p] = np.exp(-e * taus) / (1.0 + np.exp(-beta * e))
            else:
                g[:, p] = np.exp(e * (beta - taus)) / (1.0 + np.exp(beta * e))
        values = np.einsum("fp,gp,tp->tfg", V, V, g)
        return cls(beta, values)

    def coupled(self, tol=1e-14):
        """Boolean (n_flavors, n_flavors) pattern of nonzero couplings."""
        return np.max(np.abs(self.values), axis=0) > tol

    def matrix(self, rows, cols):
        """F[i, j] = F_{rows[i].flavor, cols[j].flavor}(rows[i].time - cols[j].time)."""
        row_times = np.array([op.time for op in rows], dtype=np.float64)
        row_flavors = np.array([op.flavor for op in rows], dtype=np.int64)
        col_times = np.array([op.time for op in cols], dtype=np.float64)
        col_flavors = np.array([op.flavor for op in cols], dtype=np.int64)
        return interpolate_hybridization(self.values, self.beta, row_times, row_flavors,
                                         col_times, col_flavors)


def fock_operators(n_modes):
    """Jordan-Wigner creation operators c^dag_f as sparse (2**n, 2**n) matrices."""
    dim = 2 ** n_modes
    ops = []
    for f in range(n_modes):
        op = sparse.lil_matrix((dim, dim), dtype=np.float64)
        for state in range(dim):
            if (state >> f) & 1:
                continue
            # Sign from the occupied modes with a lower index
            parity = bin(state & ((1 << f) - 1)).count("1") % 2
            op[state | (1 << f), state] = -1.0 if parity else 1.0
        ops.append(op.tocsr())
    return ops


class ImpurityModel:
    """
    Local impurity problem seen by the sampler.

    h_loc: (2**F, 2**F) real symmetric local Hamiltonian in the Fock basis.
    hybridization: HybridizationFunction with matching flavor count and beta.
    translationally_invariant: whether a global time shift must leave weights unchanged.
    basis_rotation: (F, F) rotation for the Green's function, passed through to measurement.
    """

    def __init__(self, beta, h_loc, hybridization, translationally_invariant=True, basis_rotation=None):
        h_loc = np.asarray(h_loc, dtype=np.float64)
        n_flavors = hybridization.n_flavors
        if h_loc.shape != (2 ** n_flavors, 2 ** n_flavors):
            raise ValueError(f"h_loc must have shape ({2 ** n_flavors}, {2 ** n_flavors})")
        if beta <= 0:
            raise ValueError("beta must be positive")
        if abs(hybridization.beta - beta) > 1e-12 * beta:
            raise ValueError("hybridization function was tabulated for a different beta")

        self.beta = float(beta)
        self.n_flavors = n_flavors
        self.h_loc = h_loc
        self.hybridization = hybridization
        self.translationally_invariant = translationally_invariant
        self.basis_rotation = np.eye(n_flavors) if basis_rotation is None else np.asarray(basis_rotation)

        energies, vectors = la.eigh(h_loc)
        self.ground_state_energy = energies[0]
        # Shifted so that every propagator exp(-tau E) is <= 1
        self.energies = energies - energies[0]
        self.dim = energies.size

        fock = fock_operators(n_flavors)
        self.creation = [vectors.T @ op.toarray() @ vectors for op in fock]
        self.annihilation = [op.T.copy() for op in self.creation]

        labels = connected_flavors(hybridization.coupled())
        roots = []
        for r in labels:
            if r not in roots:
                roots.append(r)
        self.blocks = [tuple(f for f in range(n_flavors) if labels[f] == r) for r in roots]
        self.block_of = np.empty(n_flavors, dtype=np.int64)
        for b, flavors in enumerate(self.blocks):
            for f in flavors:
                self.block_of[f] = b

    @classmethod
    def density_density(cls, beta, onsite, hybridization, U=None, **kwargs):
        """H_loc = sum_f onsite[f] n_f + sum_{f<g} U[f, g] n_f n_g."""
        onsite = np.asarray(onsite, dtype=np.float64)
        n = onsite.size
        U = np.zeros((n, n)) if U is None else np.asarray(U, dtype=np.float64)
        dim = 2 ** n
        diag = np.zeros(dim)
        for state in range(dim):
            occ = [(state >> f) & 1 for f in range(n)]
            diag[state] = sum(onsite[f] * occ[f] for f in range(n))
            for f in range(n):
                for g in range(f + 1, n):
                    diag[state] += U[f, g] * occ[f] * occ[g]
        return cls(beta, np.diag(diag), hybridization, **kwargs)

    def operator_matrix(self, op):
        if op.is_creation:
            return self.creation[op.flavor]
        return self.annihilation[op.flavor]

    def propagator(self, dtau):
        """Diagonal of exp(-dtau (H_loc - E_0)) in the eigenbasis."""
        return np.exp(-dtau * self.energies)
