# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from scipy.sparse import csr_matrix
from sklearn.utils import check_random_state

from ._utils import (
    GT_BOTH,
    THETA_PRIOR,
    _clip_prob,
    _doublet_pairs,
    _doublet_prior,
    _elbo,
    _genotype_loglik,
    _genotype_to_prob,
    _get_doublet_genotype,
    _get_doublet_theta,
    _get_id_prob,
    _get_psi,
    _log_binom_coeff,
    _sample_genotype,
    _sufficient_stats,
    _update_genotype,
    _update_theta,
)

logger = logging.getLogger("demuxpy")


@dataclass
class InferredDonors:
    """Donor genotypes are unknown, ``n_donor`` of them are inferred from the data."""

    n_donor: int
    extension_ratio: Optional[float] = 1.5

    @property
    def n_donor_run1(self) -> int:
        if self.extension_ratio is None or self.extension_ratio < 1:
            return self.n_donor
        return int(np.ceil(self.extension_ratio * self.n_donor))


@dataclass
class FixedGenotypes:
    """Donor genotypes are given as a ``[N, K]`` matrix with values 0, 1, 2."""

    genotype: np.ndarray
    donor_names: Optional[List[str]] = None

    def __post_init__(self):
        self.genotype = np.asarray(self.genotype, dtype=float)
        if self.genotype.ndim != 2:
            raise ValueError("Genotypes must be a [n_variants, n_donors] matrix.")

    @property
    def n_donor(self) -> int:
        return self.genotype.shape[1]


@dataclass
class VBResult:
    """
    Final state of a single variational run.

    Attributes
    ----------
    elbo : float
        Last finite evidence lower bound of the run.
    elbo_trace : np.ndarray
        Lower bound at every iteration.
    n_iter : int
        Number of iterations performed.
    status : str
        ``"converged"``, ``"max_iter"`` or ``"diverged"``.
    log_likelihood : float
        Log likelihood of the final assignment step.
    theta : np.ndarray
        ``[3, 2]`` (or ``[5, 2]`` with doublets) beta shapes per genotype state.
    psi : np.ndarray
        Prior weights of singlet and doublet states.
    GT_prob : np.ndarray
        ``[N * K, 3]`` genotype posterior stacked by donor.
    prob : np.ndarray
        ``[M, K]`` singlet assignment probabilities.
    prob_doublet : np.ndarray, optional
        ``[M, K(K-1)/2]`` doublet assignment probabilities.
    GT_doublet_prob : np.ndarray, optional
        ``[N * K(K-1)/2, 5]`` combined genotype probabilities of donor pairs.
    donor_names, doublet_names : list of str
        Column labels of ``prob`` and ``prob_doublet``.
    """

    elbo: float
    elbo_trace: np.ndarray
    n_iter: int
    status: str
    log_likelihood: float
    theta: np.ndarray
    psi: np.ndarray
    GT_prob: np.ndarray
    prob: np.ndarray
    prob_doublet: Optional[np.ndarray] = None
    GT_doublet_prob: Optional[np.ndarray] = None
    donor_names: List[str] = field(default_factory=list)
    doublet_names: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == "converged"

    @property
    def n_donor(self) -> int:
        return self.prob.shape[1]

    @property
    def genotype(self) -> np.ndarray:
        """``[N, K]`` most probable genotype of each donor."""
        N = self.GT_prob.shape[0] // self.n_donor
        return np.argmax(self.GT_prob, axis=1).reshape(self.n_donor, N).T

    @property
    def genotype_doublet(self) -> Optional[np.ndarray]:
        """``[N, K(K-1)/2]`` most probable combined genotype of each donor pair."""
        if self.GT_doublet_prob is None:
            return None
        n_pair = len(self.doublet_names)
        N = self.GT_doublet_prob.shape[0] // n_pair
        state = GT_BOTH[np.argmax(self.GT_doublet_prob, axis=1)]
        return state.reshape(n_pair, N).T


class DonorVB:
    """
    Single coordinate ascent run over genotypes, the beta error model
    and cell assignments.

    A run owns all of its mutable state, so several instances can be fitted
    side by side on the same (read-only) count matrices.
    """

    def __init__(
        self,
        K: int | None = None,
        GT: np.ndarray | None = None,
        GT_prior: np.ndarray | None = None,
        theta_prior: np.ndarray | None = None,
        learn_theta: bool = True,
        check_doublet: bool = True,
        check_doublet_iterative: bool = False,
        doublet_prior: str | float | None = None,
        auto_doublet_rate: float = 1e-5,
        binary_GT: bool = False,
        min_iter: int = 20,
        max_iter: int = 200,
        epsilon_conv: float = 1e-2,
        burnin_ratio: float = 2 / 3,
        donor_names: list[str] | None = None,
        random_state=None,
        verbose: bool = False,
    ) -> None:
        if GT is None and K is None:
            raise ValueError("Either `K` or `GT` must be given.")
        if max_iter < 1:
            raise ValueError("`max_iter` must be positive.")
        if min_iter > max_iter:
            raise ValueError("`min_iter` cannot be larger than `max_iter`.")

        self.K = GT.shape[1] if GT is not None else int(K)
        if self.K < 1:
            raise ValueError("The number of donors must be positive.")
        self.GT = GT
        self.GT_prior = GT_prior
        self.theta_prior = (
            THETA_PRIOR.copy() if theta_prior is None else np.asarray(theta_prior, float)
        )
        if self.theta_prior.shape != (3, 2) or np.any(self.theta_prior <= 0):
            raise ValueError("`theta_prior` must be a positive [3, 2] matrix.")

        self.learn_theta = learn_theta
        self.check_doublet = check_doublet and self.K > 1
        self.check_doublet_iterative = check_doublet_iterative
        self.doublet_prior = doublet_prior
        self.auto_doublet_rate = auto_doublet_rate
        self.binary_GT = binary_GT
        self.min_iter = min_iter
        self.max_iter = max_iter
        self.epsilon_conv = epsilon_conv
        self.burnin = max(min_iter - 5, min_iter * burnin_ratio)
        self.donor_names = donor_names or [f"donor{i}" for i in range(self.K)]
        self.random_state = random_state
        self.verbose = verbose

        if check_doublet and not self.check_doublet:
            logger.info("Only one donor, doublet checking is skipped")

        # state of the run
        self.update_GT = GT is None
        self.GT_prior_ = None
        self.GT_prob = None
        self.theta_shapes = None
        self.Psi = None
        self.ID_prob = None
        self.LB = None
        self.status = None

    def _init_genotype(self, N: int, random_state) -> None:
        K = self.K
        if not self.update_GT:
            self.GT_prob = _genotype_to_prob(self.GT)
            return

        if self.GT_prior is None:
            self.GT_prior_ = np.full((N * K, 3), 1 / 3)
            self.GT_prob = _sample_genotype(self.GT_prior_, random_state)
        else:
            GT_prior = np.asarray(self.GT_prior, dtype=float)
            if GT_prior.shape != (N * K, 3):
                raise ValueError(
                    f"`GT_prior` must have shape {(N * K, 3)}, got {GT_prior.shape}."
                )
            self.GT_prob = GT_prior.copy()
            self.GT_prior_ = _clip_prob(GT_prior)

    def _doublet_state(self):
        return (
            _get_doublet_genotype(self.GT_prob, self.K),
            _get_doublet_theta(self.theta_shapes),
        )

    def fit(self, A: csr_matrix, D: csr_matrix) -> VBResult:
        """
        Run coordinate ascent until the lower bound stops improving.

        :param A: ``[N, M]`` alt read counts (CSR)
        :param D: ``[N, M]`` read depths (CSR)
        :return: final state of the run
        """
        N, M = D.shape
        K = self.K
        random_state = check_random_state(self.random_state)

        logLik_coeff = _log_binom_coeff(A, D)

        # INITIALIZING
        self._init_genotype(N, random_state)
        self.theta_shapes = self.theta_prior.copy()
        doublet_prior = _doublet_prior(K, self.doublet_prior, M, self.auto_doublet_rate)
        self.Psi = _get_psi(K, doublet_prior)

        GT_prior = self.GT_prior_ if self.update_GT else None
        theta_prior = self.theta_prior if self.learn_theta else None

        self.LB = np.zeros(self.max_iter)
        S1_gt = S2_gt = None
        last_valid = None
        self.status = "max_iter"

        # ITERATING
        it = 0
        for it in range(1, self.max_iter + 1):
            after_burnin = it > self.burnin

            if self.learn_theta and after_burnin and S1_gt is not None:
                self.theta_shapes = _update_theta(
                    self.theta_prior, self.GT_prob, S1_gt, S2_gt
                )

            if self.check_doublet and self.check_doublet_iterative and after_burnin:
                GT_both, theta_both = self._doublet_state()
                self.ID_prob, logLik = _get_id_prob(A, D, GT_both, theta_both, self.Psi)
            else:
                self.ID_prob, logLik = _get_id_prob(
                    A, D, self.GT_prob, self.theta_shapes, self.Psi
                )

            S1_gt, S2_gt, SS_gt = _sufficient_stats(A, D, self.ID_prob, K)
            logLik_GT = _genotype_loglik(S1_gt, S2_gt, SS_gt, self.theta_shapes)

            if self.update_GT:
                self.GT_prob = _update_genotype(logLik_GT, self.GT_prior_, self.binary_GT)

            self.LB[it - 1] = _elbo(
                logLik_GT,
                self.GT_prob,
                GT_prior,
                self.ID_prob,
                self.Psi,
                self.theta_shapes,
                theta_prior,
                logLik_coeff,
            )
            LB = self.LB[it - 1]

            if self.verbose:
                LB_diff = LB - self.LB[it - 2] if it > 1 else np.nan
                logger.info("It: %i LB: %.4f LB_diff: %.4g", it, LB, LB_diff)

            if it > self.min_iter:
                if np.isnan(LB) or LB == -np.inf:
                    self.status = "diverged"
                    break
                if LB < self.LB[it - 2]:
                    logger.warning(
                        "Lower bound decreases at iteration %i: %.4f -> %.4f",
                        it,
                        self.LB[it - 2],
                        LB,
                    )
                if LB - self.LB[it - 2] < self.epsilon_conv:
                    self.status = "converged"
                    break

            last_valid = (self.GT_prob, self.theta_shapes, self.ID_prob, logLik, LB)

        LB_trace = self.LB[:it]

        if self.status == "diverged":
            logger.warning(
                "Lower bound is not finite at iteration %i, "
                "returning the state of iteration %i",
                it,
                it - 1,
            )
            if last_valid is not None:
                self.GT_prob, self.theta_shapes, self.ID_prob, logLik, LB = last_valid
        elif self.status == "max_iter":
            logger.warning(
                "VB did not converge in %i iterations. "
                "Consider increasing `max_iter` parameter value",
                self.max_iter,
            )

        # POST_DOUBLET_REFINE
        GT_both = None
        if self.check_doublet:
            GT_both, theta_both = self._doublet_state()
            if self.ID_prob.shape[1] == K:
                self.ID_prob, logLik = _get_id_prob(A, D, GT_both, theta_both, self.Psi)

                if self.update_GT:
                    S1_gt, S2_gt, SS_gt = _sufficient_stats(A, D, self.ID_prob, K)
                    logLik_GT = _genotype_loglik(S1_gt, S2_gt, SS_gt, self.theta_shapes)
                    self.GT_prob = _update_genotype(
                        logLik_GT, self.GT_prior_, self.binary_GT
                    )
                    GT_both = _get_doublet_genotype(self.GT_prob, K)
            self.theta_shapes = theta_both

        if self.verbose:
            logger.info(
                "Total iterations%s: %i; LBound: %.2f",
                " for doublet" if self.check_doublet else "",
                it,
                logLik,
            )

        # DONE
        doublet_names = []
        prob_doublet = GT_doublet_prob = None
        if self.check_doublet:
            doublet_names = [
                f"{self.donor_names[i]},{self.donor_names[j]}"
                for i, j in _doublet_pairs(K)
            ]
            prob_doublet = self.ID_prob[:, K:]
            GT_doublet_prob = GT_both[N * K :]

        return VBResult(
            elbo=float(LB),
            elbo_trace=LB_trace.copy(),
            n_iter=it,
            status=self.status,
            log_likelihood=logLik,
            theta=self.theta_shapes,
            psi=self.Psi,
            GT_prob=self.GT_prob,
            prob=self.ID_prob[:, :K],
            prob_doublet=prob_doublet,
            GT_doublet_prob=GT_doublet_prob,
            donor_names=list(self.donor_names),
            doublet_names=doublet_names,
        )


def run_vb(
    A: csr_matrix, D: csr_matrix, random_state=None, **kwargs
) -> VBResult:
    """Fits one :class:`DonorVB` run, used as the unit of work for restarts."""
    return DonorVB(random_state=random_state, **kwargs).fit(A, D)
