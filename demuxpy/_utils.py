# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
from itertools import combinations

import numpy as np

from scipy.sparse import csr_matrix, issparse
from scipy.special import betaln, digamma, gammaln, logsumexp, xlogy
from sklearn.utils import check_random_state

logger = logging.getLogger("demuxpy")

# alt-allele copies per genotype column
GT_SINGLET = np.array([0.0, 1.0, 2.0])
GT_DOUBLET = np.array([0.5, 1.5])
GT_BOTH = np.concatenate([GT_SINGLET, GT_DOUBLET])

# [3, 2] beta shapes for GT=0, 1, 2
THETA_PRIOR = np.array([[0.3, 29.7], [3.0, 3.0], [29.7, 0.3]])

PRIOR_MIN = 1e-8
PRIOR_MAX = 0.999999


def _log_normalize(log_prob: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Row-wise softmax with the log-sum-exp trick.

    Returns the normalized probabilities and the per-row log-sum-exp values.
    Rows with only ``-inf`` entries come back uniform instead of NaN.
    """
    # [n, 1]
    log_norm = logsumexp(log_prob, axis=1, keepdims=True)
    finite = np.isfinite(log_norm).ravel()

    prob = np.full(log_prob.shape, 1.0 / log_prob.shape[1])
    prob[finite] = np.exp(log_prob[finite] - log_norm[finite])
    prob[finite] /= prob[finite].sum(axis=1, keepdims=True)

    return prob, log_norm.ravel()


def _clip_prob(prob: np.ndarray, low: float = PRIOR_MIN, high: float = PRIOR_MAX):
    prob = np.clip(prob, low, high)
    return prob / prob.sum(axis=1, keepdims=True)


def _as_csr(X) -> csr_matrix:
    X = X.tocsr() if issparse(X) else csr_matrix(np.nan_to_num(np.asarray(X)))
    X = X.astype(np.float64)
    # missing values are zero coverage
    X.data[np.isnan(X.data)] = 0
    X.eliminate_zeros()
    return X


def _log_binom_coeff(A: csr_matrix, D: csr_matrix) -> float:
    """Sum of log C(D, A) over all covered entries."""
    # gammaln(1) == 0, so implicit zeros do not contribute
    B = D - A
    return float(
        gammaln(D.data + 1).sum() - gammaln(A.data + 1).sum() - gammaln(B.data + 1).sum()
    )


def _beta_neg_entropy(
    theta_shapes: np.ndarray, theta_prior: np.ndarray | None = None
) -> float:
    """
    E_q[log p(theta)] for beta distributions with shapes ``theta_prior``,
    taken under q = Beta(theta_shapes). Without a prior this is the
    negative entropy of q.
    """
    if theta_prior is None:
        theta_prior = theta_shapes

    a, b = theta_shapes[:, 0], theta_shapes[:, 1]
    a0, b0 = theta_prior[:, 0], theta_prior[:, 1]

    return float(
        np.sum(
            -betaln(a0, b0)
            + (a0 - 1) * digamma(a)
            + (b0 - 1) * digamma(b)
            - (a0 + b0 - 2) * digamma(a + b)
        )
    )


def _doublet_pairs(K: int) -> list[tuple[int, int]]:
    # lexicographic (0, 1), (0, 2), ..., (K - 2, K - 1)
    return list(combinations(range(K), 2))


def _doublet_prior(
    K: int, doublet_prior: str | float | None, n_cells: int, auto_rate: float = 1e-5
) -> float:
    K2 = K + K * (K - 1) // 2
    uniform = (K2 - K) / K2

    if doublet_prior is None or doublet_prior == "uniform":
        return uniform
    if doublet_prior == "auto":
        value = n_cells * auto_rate
    else:
        value = float(doublet_prior)

    if value < 0 or value >= 1:
        logger.warning(
            "doublet prior %.4g is outside [0, 1), using the uniform prior %.4g",
            value,
            uniform,
        )
        return uniform
    return value


def _get_psi(K: int, doublet_prior: float) -> np.ndarray:
    """Prior weights of K singlet states followed by K(K-1)/2 doublet states."""
    n_pair = K * (K - 1) // 2
    if n_pair == 0:
        return np.full(K, 1.0 / K)
    return np.concatenate(
        [np.full(K, (1 - doublet_prior) / K), np.full(n_pair, doublet_prior / n_pair)]
    )


def _genotype_to_prob(GT: np.ndarray) -> np.ndarray:
    """
    Converts a [N, K] genotype matrix to a [N * K, 3] one-hot matrix,
    stacked donor by donor. Missing genotypes become uniform rows.
    """
    # [N * K]
    gt = np.asarray(GT, dtype=float).T.reshape(-1)
    GT_prob = (gt[:, np.newaxis] == GT_SINGLET[np.newaxis]).astype(float)

    missing = GT_prob.sum(axis=1) == 0
    if missing.any():
        logger.info(
            "%i donor genotypes are missing or not in {0, 1, 2}, "
            "they are treated as uniform",
            missing.sum(),
        )
        GT_prob[missing] = 1.0 / len(GT_SINGLET)

    return GT_prob


def _sample_genotype(GT_prior: np.ndarray, random_state=None) -> np.ndarray:
    """Draws one one-hot genotype per row from the categorical ``GT_prior``."""
    random_state = check_random_state(random_state)

    cum_prob = np.cumsum(GT_prior, axis=1)
    u = random_state.rand(GT_prior.shape[0], 1) * cum_prob[:, -1:]
    idx = np.minimum((u > cum_prob).sum(axis=1), GT_prior.shape[1] - 1)

    GT_prob = np.zeros_like(GT_prior)
    GT_prob[np.arange(GT_prior.shape[0]), idx] = 1
    return GT_prob


def _sufficient_stats(A: csr_matrix, D: csr_matrix, ID_prob: np.ndarray, K: int):
    # [N, K] = [N, M] x [M, K]
    S1 = np.asarray(A @ ID_prob[:, :K])
    SS = np.asarray(D @ ID_prob[:, :K])
    return S1, SS - S1, SS


def _update_theta(
    theta_prior: np.ndarray,
    GT_prob: np.ndarray,
    S1_gt: np.ndarray,
    S2_gt: np.ndarray,
) -> np.ndarray:
    # [N * K] stacked by donor, like GT_prob rows
    s1 = S1_gt.T.reshape(-1)
    s2 = S2_gt.T.reshape(-1)

    theta_shapes = theta_prior.copy()
    # [3] = [N * K] x [N * K, 3]
    theta_shapes[:, 0] += s1 @ GT_prob
    theta_shapes[:, 1] += s2 @ GT_prob
    return theta_shapes


def _genotype_loglik(
    S1_gt: np.ndarray, S2_gt: np.ndarray, SS_gt: np.ndarray, theta_shapes: np.ndarray
) -> np.ndarray:
    # [N * K, 1]
    s1 = S1_gt.T.reshape(-1, 1)
    s2 = S2_gt.T.reshape(-1, 1)
    ss = SS_gt.T.reshape(-1, 1)

    a, b = theta_shapes[:, 0], theta_shapes[:, 1]
    # [N * K, 3]
    return s1 * digamma(a) + s2 * digamma(b) - ss * digamma(a + b)


def _update_genotype(
    logLik_GT: np.ndarray, GT_prior: np.ndarray, binary_GT: bool = False
) -> np.ndarray:
    """
    Posterior over the three genotypes of every donor and variant.

    With ``binary_GT`` each row is replaced by a one-hot vector at the
    arg-max of the posterior, so the prior takes part in the hard call.
    """
    GT_prob, _ = _log_normalize(logLik_GT + np.log(GT_prior))

    if binary_GT:
        idx_max = np.argmax(GT_prob, axis=1)
        GT_prob = np.zeros_like(GT_prob)
        GT_prob[np.arange(GT_prob.shape[0]), idx_max] = 1

    return GT_prob


def _get_doublet_genotype(GT_prob: np.ndarray, K: int) -> np.ndarray:
    """
    Genotype probabilities of singlet and doublet donors.

    Each donor pair is combined assuming both cells contribute alleles
    equally, which gives the states 0, 1, 2, 0.5 and 1.5 (in this column order).
    Singlet rows are zero padded to the five states and come first.

    :param GT_prob: ``[N * K, 3]`` singlet genotype probabilities stacked by donor
    :param K: number of singlet donors
    :return: ``[N * (K + K(K-1)/2), 5]`` genotype probabilities
    """
    N = GT_prob.shape[0] // K
    # [K, N, 3]
    G = GT_prob.reshape(K, N, 3)

    pairs = _doublet_pairs(K)
    idx1 = np.array([p[0] for p in pairs], dtype=int)
    idx2 = np.array([p[1] for p in pairs], dtype=int)
    # [P, N, 3]
    g1, g2 = G[idx1], G[idx2]

    GT_prob2 = np.zeros((len(pairs), N, 5))
    GT_prob2[..., 0] = g1[..., 0] * g2[..., 0]
    GT_prob2[..., 1] = (
        g1[..., 1] * g2[..., 1] + g1[..., 0] * g2[..., 2] + g1[..., 2] * g2[..., 0]
    )
    GT_prob2[..., 2] = g1[..., 2] * g2[..., 2]
    GT_prob2[..., 3] = g1[..., 0] * g2[..., 1] + g1[..., 1] * g2[..., 0]
    GT_prob2[..., 4] = g1[..., 1] * g2[..., 2] + g1[..., 2] * g2[..., 1]

    GT_prob2 = GT_prob2.reshape(-1, 5)
    row_sum = GT_prob2.sum(axis=1, keepdims=True)
    GT_prob2 = np.divide(
        GT_prob2, row_sum, out=np.full_like(GT_prob2, 0.2), where=row_sum > 0
    )

    GT_zero = np.zeros((GT_prob.shape[0], 2))
    return np.vstack([np.hstack([GT_prob, GT_zero]), GT_prob2])


def _get_doublet_theta(theta_shapes: np.ndarray) -> np.ndarray:
    """
    Appends beta shapes for the doublet states 0.5 and 1.5 to the ``[3, 2]``
    singlet shapes: the mean is the average of the two neighbouring singlet
    means, the shape sum is the geometric mean of their shape sums.
    """
    theta_shapes2 = np.zeros((2, 2))
    for ii in range(2):
        theta_input = theta_shapes[ii : ii + 2]
        shape_sums = theta_input.sum(axis=1)

        theta_mean = np.mean(theta_input[:, 0] / shape_sums)
        shape_sum = np.sqrt(shape_sums[0] * shape_sums[1])
        theta_shapes2[ii] = [theta_mean * shape_sum, (1 - theta_mean) * shape_sum]

    return np.vstack([theta_shapes, theta_shapes2])


def _get_id_prob(
    A: csr_matrix,
    D: csr_matrix,
    GT_prob: np.ndarray,
    theta_shapes: np.ndarray,
    Psi: np.ndarray,
) -> tuple[np.ndarray, float]:
    """
    Posterior probability of every cell to come from every donor state.

    :param A: ``[N, M]`` alt read counts
    :param D: ``[N, M]`` read depths
    :param GT_prob: ``[N * K, G]`` genotype probabilities stacked by donor state
    :param theta_shapes: ``[G, 2]`` beta shapes for each genotype column
    :param Psi: prior weights, only the first K are used
    :return: ``[M, K]`` assignment probabilities and the log likelihood
    """
    N, M = A.shape
    K = GT_prob.shape[0] // N

    logLik_ID = np.zeros((M, K))
    for ig in range(GT_prob.shape[1]):
        # [N, K]
        G = GT_prob[:, ig].reshape(K, N).T
        # [M, K] = [M, N] x [N, K]
        S1 = np.asarray(A.T @ G)
        SS = np.asarray(D.T @ G)
        S2 = SS - S1
        a, b = theta_shapes[ig]
        logLik_ID += S1 * digamma(a) + S2 * digamma(b) - SS * digamma(a + b)

    with np.errstate(divide="ignore"):
        logLik_ID += np.log(Psi[:K] / Psi[:K].sum())[np.newaxis]

    ID_prob, log_norm = _log_normalize(logLik_ID)
    logLik = float(np.sum(log_norm[np.isfinite(log_norm)]))

    return ID_prob, logLik


def _elbo(
    logLik_GT: np.ndarray,
    GT_prob: np.ndarray,
    GT_prior: np.ndarray | None,
    ID_prob: np.ndarray,
    Psi: np.ndarray,
    theta_shapes: np.ndarray,
    theta_prior: np.ndarray | None,
    logLik_coeff: float,
) -> float:
    """
    Evidence lower bound; ``GT_prior=None`` / ``theta_prior=None`` drop the
    genotype / error model terms when they are not learned.
    """
    K = ID_prob.shape[1]

    LB_p = np.sum(logLik_GT * GT_prob) + logLik_coeff
    LB_p_ID = np.sum(xlogy(ID_prob, (Psi[:K] / Psi[:K].sum())[np.newaxis]))
    LB_q_ID = np.sum(xlogy(ID_prob, ID_prob))

    if GT_prior is not None:
        LB_p_GT = np.sum(xlogy(GT_prob, GT_prior))
        LB_q_GT = np.sum(xlogy(GT_prob, GT_prob))
    else:
        LB_p_GT = LB_q_GT = 0.0

    if theta_prior is not None:
        LB_p_theta = _beta_neg_entropy(theta_shapes, theta_prior)
        LB_q_theta = _beta_neg_entropy(theta_shapes)
    else:
        LB_p_theta = LB_q_theta = 0.0

    return float(
        LB_p_ID + LB_p_GT + LB_p_theta + LB_p - LB_q_ID - LB_q_GT - LB_q_theta
    )
