from __future__ import annotations

import numpy as np
from scipy.sparse import csr_matrix

from anndata import AnnData

from .pp import add_donor_genotypes, counts_to_anndata


def simulate_donor_mix(
    n_donor: int = 3,
    n_variant: int = 300,
    n_cell: int = 200,
    doublet_rate: float = 0.0,
    coverage: float = 0.3,
    mean_depth: float = 3.0,
    alt_fraction: tuple[float, float, float] = (0.01, 0.5, 0.99),
    random_seed: int | None = 0,
) -> AnnData:
    """
    Simulates pooled single-cell allelic counts from ``n_donor`` donors.

    Every variant is covered in a cell with probability ``coverage``,
    covered depths are ``1 + Poisson(mean_depth - 1)``, and alt reads are binomial
    with the alt fraction of the donor genotype (averaged over both donors for doublets).
    True labels are saved to ``adata.obs["donor_true"]``
    and donor genotypes to ``adata.varm["donor_genotype"]``.
    """
    rng = np.random.default_rng(random_seed)

    # [N, K]
    GT = rng.integers(0, 3, size=(n_variant, n_donor))
    # [N, K] alt fraction
    p_alt = np.asarray(alt_fraction)[GT]

    donor = rng.integers(0, n_donor, size=n_cell)
    donor2 = donor.copy()
    is_doublet = rng.random(n_cell) < doublet_rate if n_donor > 1 else np.zeros(n_cell, bool)
    for i in np.where(is_doublet)[0]:
        donor2[i] = rng.choice([k for k in range(n_donor) if k != donor[i]])

    # [N, M]
    p_cell = (p_alt[:, donor] + p_alt[:, donor2]) / 2
    covered = rng.random((n_variant, n_cell)) < coverage
    D = np.where(covered, 1 + rng.poisson(mean_depth - 1, size=covered.shape), 0)
    A = rng.binomial(D, p_cell)

    adata = counts_to_anndata(csr_matrix(A), csr_matrix(D))
    add_donor_genotypes(adata, GT)

    labels = np.array([f"donor{k}" for k in donor], dtype=object)
    labels[is_doublet] = "doublet"
    adata.obs["donor_true"] = labels

    return adata
