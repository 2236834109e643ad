"""
Exact Diagonalization for an Anderson impurity coupled to a discrete bath
H = sum_f eps_f n_f + sum_{f<g} U_fg n_f n_g + sum_p eps_p n_p
    + sum_{f,p} V_fp (c^dag_f b_p + b^dag_p c_f)

For verification of CT-HYB results on small systems. Modes 0..F-1 are the
impurity flavors, modes F..F+P-1 the bath levels.
"""

import numpy as np
import scipy.linalg as la
from scipy import sparse

from .model import HybridizationFunction, ImpurityModel, fock_operators


class ED_Anderson:
    def __init__(self, onsite, bath_energies, hoppings, U=None):
        """
        onsite: (F,) impurity level energies
        bath_energies: (P,) bath level energies
        hoppings: (F, P) impurity-bath couplings
        U: (F, F) density-density interaction, upper triangle used
        """
        self.onsite = np.atleast_1d(np.asarray(onsite, dtype=np.float64))
        self.bath_energies = np.atleast_1d(np.asarray(bath_energies, dtype=np.float64))
        self.hoppings = np.asarray(hoppings, dtype=np.float64).reshape(self.onsite.size, self.bath_energies.size)
        self.n_flavors = self.onsite.size
        self.n_bath = self.bath_energies.size
        self.U = np.zeros((self.n_flavors, self.n_flavors)) if U is None else np.asarray(U, dtype=np.float64)
        self.n_modes = self.n_flavors + self.n_bath
        self.dim = 2 ** self.n_modes

        self._cdag = fock_operators(self.n_modes)
        self._numbers = [op @ op.T for op in self._cdag]
        self.H_loc, self.H_bath, self.H_hyb = self._build_hamiltonian()
        self.H = self.H_loc + self.H_bath + self.H_hyb

        # Cache for eigenvalues/eigenvectors
        self._eigenvalues = None
        self._eigenvectors = None

    def _build_hamiltonian(self):
        """Build the three parts of the Hamiltonian in the Fock basis"""
        F = self.n_flavors
        zero = sparse.csr_matrix((self.dim, self.dim))
        H_loc = sum((self.onsite[f] * self._numbers[f] for f in range(F)), zero)
        for f in range(F):
            for g in range(f + 1, F):
                if self.U[f, g] != 0.0:
                    H_loc = H_loc + self.U[f, g] * (self._numbers[f] @ self._numbers[g])
        H_bath = sum((self.bath_energies[p] * self._numbers[F + p] for p in range(self.n_bath)), zero)

        H_hyb = zero
        for f in range(F):
            for p in range(self.n_bath):
                V = self.hoppings[f, p]
                if V == 0.0:
                    continue
                hop = self._cdag[f] @ self._cdag[F + p].T
                H_hyb = H_hyb + V * (hop + hop.T)
        return H_loc.tocsr(), H_bath.tocsr(), H_hyb.tocsr()

    def diagonalize(self):
        """Compute eigenvalues and eigenvectors"""
        if self._eigenvalues is None:
            self._eigenvalues, self._eigenvectors = la.eigh(self.H.toarray())
        return self._eigenvalues, self._eigenvectors

    def _boltzmann_weights(self, beta):
        eigenvalues, _ = self.diagonalize()
        # Shift to avoid overflow
        weights = np.exp(-beta * (eigenvalues - eigenvalues[0]))
        return weights / np.sum(weights)

    def thermal_expectation(self, op, beta):
        """<op> = Tr[op exp(-beta H)] / Z"""
        _, eigenvectors = self.diagonalize()
        weights = self._boltzmann_weights(beta)
        diag = np.einsum("in,in->n", eigenvectors, op @ eigenvectors)
        return float(np.sum(weights * diag))

    def hybridization_energy(self, beta):
        return self.thermal_expectation(self.H_hyb, beta)

    def mean_expansion_order(self, beta):
        """
        <k> = -beta <H_hyb> / 2: every hybridized pair carries two hybridization
        vertices in the expansion of exp(-beta H).
        """
        return -beta * self.hybridization_energy(beta) / 2.0

    def impurity_occupation(self, beta):
        return np.array([self.thermal_expectation(self._numbers[f], beta) for f in range(self.n_flavors)])

    def hybridization_function(self, beta, n_tau=2000):
        return HybridizationFunction.from_bath(beta, self.bath_energies, self.hoppings, n_tau=n_tau)

    def impurity_model(self, beta, n_tau=2000):
        """The impurity problem the sampler sees for this Hamiltonian."""
        return ImpurityModel.density_density(beta, self.onsite, self.hybridization_function(beta, n_tau),
                                             U=self.U)

    def all_thermal_observables(self, beta):
        """Compute all thermal observables at once"""
        return {
            'expansion_order': self.mean_expansion_order(beta),
            'hybridization_energy': self.hybridization_energy(beta),
            'occupation': self.impurity_occupation(beta),
        }


if __name__ == "__main__":
    # Test ED
    ed = ED_Anderson(onsite=[0.0], bath_energies=[0.0], hoppings=[[1.0]])

    print("Testing ED for a single level coupled to one bath level, V=1")
    for beta in [1.0, 2.0, 4.0]:
        obs = ed.all_thermal_observables(beta)
        print(f"\nbeta = {beta}:")
        print(f"  <k>: {obs['expansion_order']:.6f}")
        print(f"  <H_hyb>: {obs['hybridization_energy']:.6f}")
        print(f"  <n_d>: {obs['occupation']}")
