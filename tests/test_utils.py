import numpy as np
from scipy.sparse import csr_matrix
from scipy.stats import beta

from demuxpy._utils import (
    GT_BOTH,
    THETA_PRIOR,
    _beta_neg_entropy,
    _clip_prob,
    _doublet_prior,
    _genotype_to_prob,
    _get_doublet_genotype,
    _get_doublet_theta,
    _get_id_prob,
    _get_psi,
    _log_binom_coeff,
    _log_normalize,
    _sample_genotype,
    _update_genotype,
    _update_theta,
)


class TestUtils:
    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def test_log_normalize(self):
        log_prob = np.array(
            [[-1e4, -1e4 - 1.0, -1e4 - 2.0], [0.0, 0.0, 0.0], [-np.inf] * 3]
        )
        prob, log_norm = _log_normalize(log_prob)

        self.assert_equals(prob.sum(axis=1), 1)
        assert not np.isnan(prob).any()
        self.assert_equals(prob[1], 1 / 3)
        self.assert_equals(prob[2], 1 / 3)
        assert prob[0, 0] > prob[0, 1] > prob[0, 2]
        self.assert_equals(log_norm[1], np.log(3))

    def test_clip_prob(self):
        prob = _clip_prob(np.array([[1.0, 0.0, 0.0]]))
        assert prob.min() > 0
        assert prob.max() < 1
        self.assert_equals(prob.sum(axis=1), 1)

    def test_genotype_to_prob(self):
        # [N=2, K=2]
        GT = np.array([[0, 2], [1, np.nan]])
        GT_prob = _genotype_to_prob(GT)

        assert GT_prob.shape == (4, 3)
        # stacked by donor: donor0 rows first
        self.assert_equals(GT_prob[0], [1, 0, 0])
        self.assert_equals(GT_prob[1], [0, 1, 0])
        self.assert_equals(GT_prob[2], [0, 0, 1])
        self.assert_equals(GT_prob[3], 1 / 3)

    def test_sample_genotype(self):
        GT_prior = np.full((50, 3), 1 / 3)
        GT_prob = _sample_genotype(GT_prior, random_state=0)

        self.assert_equals(GT_prob.sum(axis=1), 1)
        assert set(np.unique(GT_prob)) <= {0.0, 1.0}
        self.assert_equals(GT_prob, _sample_genotype(GT_prior, random_state=0))

    def test_doublet_genotype_one_hot(self):
        rng = np.random.default_rng(1)
        N, K = 40, 4
        GT = rng.integers(0, 3, size=(N, K))
        GT_both = _get_doublet_genotype(_genotype_to_prob(GT), K)

        n_pair = K * (K - 1) // 2
        assert GT_both.shape == (N * (K + n_pair), 5)
        self.assert_equals(GT_both.sum(axis=1), 1)
        # singlets are zero padded
        self.assert_equals(GT_both[: N * K, 3:], 0)

        pair = 0
        for i in range(K):
            for j in range(i + 1, K):
                rows = GT_both[N * (K + pair) : N * (K + pair + 1)]
                state = GT_BOTH[np.argmax(rows, axis=1)]
                self.assert_equals(rows.max(axis=1), 1)
                self.assert_equals(state, (GT[:, i] + GT[:, j]) / 2)
                pair += 1

    def test_doublet_genotype_soft(self):
        GT_prob = np.array([[0.5, 0.5, 0.0], [0.2, 0.3, 0.5]])
        GT_both = _get_doublet_genotype(GT_prob, 2)
        doublet = GT_both[2]

        self.assert_equals(doublet.sum(), 1)
        self.assert_equals(doublet[0], 0.5 * 0.2)
        self.assert_equals(doublet[1], 0.5 * 0.3 + 0.5 * 0.5)
        self.assert_equals(doublet[3], 0.5 * 0.3 + 0.5 * 0.2)

    def test_doublet_theta(self):
        theta_both = _get_doublet_theta(THETA_PRIOR)

        assert theta_both.shape == (5, 2)
        self.assert_equals(theta_both[:3], THETA_PRIOR)

        mean = theta_both[3, 0] / theta_both[3].sum()
        self.assert_equals(mean, (0.01 + 0.5) / 2)
        self.assert_equals(theta_both[3].sum(), np.sqrt(30 * 6))
        self.assert_equals(theta_both[4, 0] / theta_both[4].sum(), (0.5 + 0.99) / 2)

    def test_beta_neg_entropy(self):
        expected = -sum(beta(a, b).entropy() for a, b in THETA_PRIOR)
        self.assert_equals(_beta_neg_entropy(THETA_PRIOR), expected, 1e-6)

    def test_log_binom_coeff(self):
        A = csr_matrix(np.array([[1, 0], [0, 2]]))
        D = csr_matrix(np.array([[3, 0], [4, 2]]))
        self.assert_equals(_log_binom_coeff(A, D), np.log(3))

    def test_doublet_prior(self):
        assert _doublet_prior(3, None, 100) == 0.5
        assert _doublet_prior(3, "uniform", 100) == 0.5
        self.assert_equals(_doublet_prior(3, "auto", 1000), 0.01)
        self.assert_equals(_doublet_prior(3, "auto", 1000, auto_rate=1e-4), 0.1)
        self.assert_equals(_doublet_prior(3, 0.2, 100), 0.2)
        assert _doublet_prior(3, 1.5, 100) == 0.5
        # a prior of one leaves no mass for singlets
        assert _doublet_prior(3, 1.0, 100) == 0.5
        self.assert_equals(_doublet_prior(3, 0.999, 100), 0.999)

    def test_psi(self):
        Psi = _get_psi(3, 0.3)
        assert Psi.shape == (6,)
        self.assert_equals(Psi.sum(), 1)
        self.assert_equals(Psi[:3], 0.7 / 3)
        self.assert_equals(_get_psi(1, 0.0), [1.0])

    def test_id_prob_no_coverage(self):
        N, M, K = 20, 4, 3
        A = csr_matrix((N, M))
        D = csr_matrix((N, M))
        GT_prob = _genotype_to_prob(np.zeros((N, K)))
        Psi = np.array([0.2, 0.3, 0.5])

        ID_prob, logLik = _get_id_prob(A, D, GT_prob, THETA_PRIOR, Psi)

        assert not np.isnan(ID_prob).any()
        self.assert_equals(ID_prob, np.tile(Psi, (M, 1)))
        self.assert_equals(logLik, 0)

    def test_id_prob_rows(self):
        rng = np.random.default_rng(0)
        N, M, K = 30, 10, 2
        D = rng.integers(0, 5, size=(N, M))
        A = rng.binomial(D, 0.5)
        GT_prob = _genotype_to_prob(rng.integers(0, 3, size=(N, K)))

        ID_prob, logLik = _get_id_prob(
            csr_matrix(A), csr_matrix(D), GT_prob, THETA_PRIOR, np.array([0.5, 0.5])
        )

        assert ID_prob.shape == (M, K)
        self.assert_equals(ID_prob.sum(axis=1), 1)
        assert np.isfinite(logLik)

    def test_update_theta(self):
        # [N=2, K=1]
        GT_prob = _genotype_to_prob(np.array([[0], [2]]))
        S1 = np.array([[1.0], [8.0]])
        S2 = np.array([[9.0], [2.0]])

        theta = _update_theta(THETA_PRIOR, GT_prob, S1, S2)
        self.assert_equals(theta[0], THETA_PRIOR[0] + [1, 9])
        self.assert_equals(theta[1], THETA_PRIOR[1])
        self.assert_equals(theta[2], THETA_PRIOR[2] + [8, 2])

    def test_update_genotype_binary_uses_prior(self):
        # likelihood favours genotype 0, the prior favours genotype 2
        logLik_GT = np.log(np.array([[0.6, 0.3, 0.1], [0.6, 0.3, 0.1]]))
        GT_prior = np.array([[1 / 3, 1 / 3, 1 / 3], [0.01, 0.01, 0.98]])

        GT_prob = _update_genotype(logLik_GT, GT_prior)
        self.assert_equals(GT_prob.sum(axis=1), 1)
        self.assert_equals(GT_prob[0], [0.6, 0.3, 0.1])

        GT_hard = _update_genotype(logLik_GT, GT_prior, binary_GT=True)
        self.assert_equals(GT_hard, [[1, 0, 0], [0, 0, 1]])
