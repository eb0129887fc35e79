# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import time
import warnings

from typing import Sequence, Union

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from joblib import Parallel, delayed
from sklearn.utils import check_random_state

from ._utils import _as_csr
from .vb import FixedGenotypes, InferredDonors, VBResult, run_vb


logger = logging.getLogger("demuxpy")

Donors = Union[InferredDonors, FixedGenotypes]


def _resolve_donors(
    K: int | None = None,
    GT: np.ndarray | None = None,
    extension_ratio: float | None = 1.5,
    donor_names: list[str] | None = None,
) -> Donors:
    if GT is not None:
        return FixedGenotypes(np.asarray(GT, dtype=float), donor_names)
    if K is None:
        raise ValueError("`GT` and `K` cannot both be None.")
    if K < 1:
        raise ValueError("`K` must be a positive number of donors.")
    return InferredDonors(int(K), extension_ratio)


def _check_counts(A, D, donors: Donors):
    A = _as_csr(A)
    D = _as_csr(D)

    if A.shape != D.shape:
        raise ValueError(f"A and D must have the same size, got {A.shape} and {D.shape}.")
    if (A > D).nnz > 0:
        raise ValueError("Alt read counts cannot exceed read depth.")
    if isinstance(donors, FixedGenotypes) and donors.genotype.shape[0] != A.shape[0]:
        raise ValueError(
            f"Genotypes have {donors.genotype.shape[0]} variants, "
            f"while the count matrices have {A.shape[0]}."
        )
    return A, D


def _select_best(results: Sequence[VBResult]) -> int:
    """Index of the run with the highest lower bound, NaN counts as lowest."""
    elbo = np.array([res.elbo for res in results], dtype=float)
    if np.all(np.isnan(elbo)):
        return 0
    return int(np.nanargmax(elbo))


def _run_trials(A, D, seeds, n_jobs: int, **vb_kwargs) -> list[VBResult]:
    if n_jobs == 1 or len(seeds) == 1:
        return [run_vb(A, D, random_state=seed, **vb_kwargs) for seed in seeds]

    return Parallel(n_jobs=n_jobs)(
        delayed(run_vb)(A, D, random_state=seed, **vb_kwargs) for seed in seeds
    )


def donor_id_vb(
    A,
    D,
    donors: Donors | None = None,
    K: int | None = None,
    GT: np.ndarray | None = None,
    extension_ratio: float | None = 1.5,
    GT_prior: np.ndarray | None = None,
    n_init: int | None = None,
    n_jobs: int | None = None,
    random_seed: int | None = None,
    **vb_kwargs,
) -> VBResult:
    """
    Variational donor deconvolution with several random restarts,
    keeping the run with the highest lower bound.

    If genotypes are not given, the first pass runs with
    ``ceil(extension_ratio * K)`` donors, and a second run with ``K`` donors
    is seeded with the genotypes of the ``K`` largest donors of the best first pass.

    :param A: ``[N, M]`` alt read counts, dense or sparse
    :param D: ``[N, M]`` read depths, dense or sparse
    :param donors: :class:`InferredDonors` or :class:`FixedGenotypes`;
        if None, it is built from ``K``, ``GT`` and ``extension_ratio``
    :type donors: InferredDonors | FixedGenotypes | None, optional
    :param K: number of donors to infer when genotypes are not given
    :type K: int | None, optional
    :param GT: ``[N, K]`` donor genotypes with values 0, 1, 2
    :type GT: np.ndarray | None, optional
    :param extension_ratio: extension ratio of the donor number in the first pass, defaults to 1.5
    :type extension_ratio: float | None, optional
    :param GT_prior: ``[N * K, 3]`` genotype prior probabilities for the first pass
    :type GT_prior: np.ndarray | None, optional
    :param n_init: number of restarts, defaults to 2 with genotypes and 4 without
    :type n_init: int | None, optional
    :param n_jobs: number of parallel workers, defaults to ``scanpy.settings.n_jobs``
    :type n_jobs: int | None, optional
    :param random_seed: seed of the restarts, defaults to None
    :type random_seed: int | None, optional
    :param vb_kwargs: forwarded to :class:`demuxpy.vb.DonorVB`
    :return: the best run
    :rtype: VBResult
    """
    start = time.time()

    if donors is None:
        donors = _resolve_donors(K, GT, extension_ratio)
    A, D = _check_counts(A, D, donors)

    if n_init is None:
        n_init = 2 if isinstance(donors, FixedGenotypes) else 4
    if n_init < 1:
        raise ValueError("`n_init` must be positive.")
    if n_jobs is None:
        n_jobs = sc.settings.n_jobs

    random_state = check_random_state(random_seed)
    seeds = random_state.randint(np.iinfo(np.int32).max, size=n_init)

    if isinstance(donors, FixedGenotypes):
        K_run1 = donors.n_donor
        run_kwargs = dict(GT=donors.genotype, donor_names=donors.donor_names)
    else:
        K_run1 = donors.n_donor_run1
        run_kwargs = dict(K=K_run1, GT_prior=GT_prior)

    logger.info(
        "run1: %i random initializations with %i donors on %i variants and %i cells",
        n_init,
        K_run1,
        *D.shape,
    )
    results = _run_trials(A, D, seeds, n_jobs, **run_kwargs, **vb_kwargs)

    logger.info(
        "n_iter: %s; LBound: %s",
        [res.n_iter for res in results],
        [round(res.elbo, 2) for res in results],
    )
    res_best = results[_select_best(results)]

    if isinstance(donors, InferredDonors) and K_run1 > donors.n_donor:
        res_best = _second_pass(A, D, res_best, donors.n_donor, random_state, vb_kwargs)

    logger.info("Finished in %.2f sec.", time.time() - start)
    return res_best


def _second_pass(A, D, res_run1: VBResult, K: int, random_state, vb_kwargs) -> VBResult:
    N = A.shape[0]
    # [K_run1]
    sum_cell = res_run1.prob.sum(axis=0)
    idx_don = np.argsort(-sum_cell, kind="stable")

    logger.info("Donor size in run1: %s", np.round(sum_cell[idx_don], 2).tolist())
    if sum_cell[idx_don[K - 1]] < 2 * sum_cell[idx_don[K]]:
        warnings.warn(
            "The difference between the K-th and (K+1)-th donor is too small. "
            "Best to run again with more initializations to reach the global optimum."
        )

    # [K_run1, N, 3] -> [K * N, 3]
    GT_prior = res_run1.GT_prob.reshape(-1, N, 3)[idx_don[:K]].reshape(-1, 3)

    logger.info("run2: %i donors seeded by run1", K)
    return run_vb(
        A,
        D,
        random_state=random_state.randint(np.iinfo(np.int32).max),
        K=K,
        GT_prior=GT_prior,
        **vb_kwargs,
    )


def assign_cells(
    prob: np.ndarray,
    prob_doublet: np.ndarray | None,
    n_vars: np.ndarray,
    cell_names: Sequence[str] | None = None,
    donor_names: Sequence[str] | None = None,
    n_vars_threshold: int = 10,
    s_threshold: float = 0.9,
    d_threshold: float = 0.9,
) -> pd.DataFrame:
    """
    Turns assignment probabilities into one label per cell.

    Labels are decided in this order: too few covered variants gives "unassigned";
    doublet probability above ``1 - s_threshold`` gives "doublet";
    a singlet probability of at least ``s_threshold`` gives that donor;
    low doublet and low singlet probabilities give "unassigned";
    otherwise the most probable donor.

    :param prob: ``[M, K]`` singlet probabilities
    :param prob_doublet: ``[M, K(K-1)/2]`` doublet probabilities, None if not computed
    :param n_vars: ``[M]`` number of variants with coverage in each cell
    :param n_vars_threshold: minimum number of covered variants, defaults to 10
    :param s_threshold: singlet posterior threshold, defaults to 0.9
    :param d_threshold: doublet posterior threshold, defaults to 0.9
    :return: data frame with columns "cell", "donor_id", "prob_max", "prob_doublet", "n_vars"
    """
    for name, value in [("s_threshold", s_threshold), ("d_threshold", d_threshold)]:
        if not 0 <= value <= 1:
            raise ValueError(f"`{name}` must be in [0, 1], got {value}.")

    M, K = prob.shape
    if cell_names is None:
        cell_names = [f"cell{i}" for i in range(M)]
    if donor_names is None:
        donor_names = [f"donor{i}" for i in range(K)]

    n_vars = np.asarray(n_vars).ravel()
    prob_max = prob.max(axis=1)
    donor_max = np.asarray(donor_names, dtype=object)[np.argmax(prob, axis=1)]
    prob_singlet = prob.sum(axis=1)

    if prob_doublet is None:
        prob_dbl = np.full(M, np.nan)
        is_doublet = np.zeros(M, dtype=bool)
        low_both = np.zeros(M, dtype=bool)
    else:
        prob_dbl = prob_doublet.sum(axis=1)
        is_doublet = prob_dbl > 1 - s_threshold
        low_both = (prob_dbl < d_threshold) & (prob_singlet < s_threshold)

    donor_id = np.select(
        [
            n_vars < n_vars_threshold,
            is_doublet,
            prob_max >= s_threshold,
            low_both,
        ],
        ["unassigned", "doublet", donor_max, "unassigned"],
        default=donor_max,
    )

    return pd.DataFrame(
        {
            "cell": list(cell_names),
            "donor_id": donor_id,
            "prob_max": prob_max,
            "prob_doublet": prob_dbl,
            "n_vars": n_vars,
        }
    )


def donor_id(
    adata: AnnData,
    n_donor: int | None = None,
    genotype_key: str | None = "donor_genotype",
    check_doublet: bool = True,
    n_vars_threshold: int = 10,
    s_threshold: float = 0.9,
    d_threshold: float = 0.9,
    layer_alt: str = "A",
    layer_depth: str = "D",
    key_added: str = "donor_id",
    **kwargs,
) -> None:
    """
    Assigns cells of ``adata`` to donors (or doublets) from their allelic read counts.

    Uses donor genotypes from ``adata.varm[genotype_key]`` if present,
    otherwise infers ``n_donor`` donors. Saves labels and summaries to
    ``adata.obs[["donor_id", "prob_max", "prob_doublet", "n_vars"]]``,
    assignment probabilities to ``adata.obsm["donor_prob"]`` (and ``adata.obsm["doublet_prob"]``),
    the genotype point estimate to ``adata.varm["donor_genotype_inferred"]``
    and everything else to ``adata.uns[key_added]``.

    :param adata: cells x variants adata with alt and depth counts in layers
    :type adata: AnnData
    :param n_donor: number of donors to infer, defaults to None
    :type n_donor: int | None, optional
    :param genotype_key: ``adata.varm`` key with donor genotypes, defaults to "donor_genotype"
    :type genotype_key: str | None, optional
    :param check_doublet: if to check for doublets, defaults to True
    :type check_doublet: bool, optional
    :param n_vars_threshold: cells with fewer covered variants are "unassigned", defaults to 10
    :type n_vars_threshold: int, optional
    :param s_threshold: posterior threshold for singlet assignment, defaults to 0.9
    :type s_threshold: float, optional
    :param d_threshold: posterior threshold for doublets, defaults to 0.9
    :type d_threshold: float, optional
    :param layer_alt: layer with alt read counts, defaults to "A"
    :type layer_alt: str, optional
    :param layer_depth: layer with read depths, defaults to "D"
    :type layer_depth: str, optional
    :param key_added: ``adata.uns`` key and ``adata.obs`` label column, defaults to "donor_id"
    :type key_added: str, optional
    :param kwargs: forwarded to :func:`donor_id_vb`
    """
    for layer in (layer_alt, layer_depth):
        if layer not in adata.layers:
            raise ValueError(f"Layer `{layer}` not found in adata.layers.")
    for name, value in [("s_threshold", s_threshold), ("d_threshold", d_threshold)]:
        if not 0 <= value <= 1:
            raise ValueError(f"`{name}` must be in [0, 1], got {value}.")

    GT = None
    donor_names = None
    if genotype_key is not None and genotype_key in adata.varm:
        GT = np.asarray(adata.varm[genotype_key], dtype=float)
        donor_names = adata.uns.get("donor_names")
        if donor_names is not None:
            donor_names = list(donor_names)
    elif n_donor is None:
        raise ValueError(
            f"No genotypes found in adata.varm['{genotype_key}'], `n_donor` must be given."
        )

    donors = _resolve_donors(
        n_donor, GT, kwargs.pop("extension_ratio", 1.5), donor_names
    )

    logger.info("Donor ID using %i variants", adata.n_vars)

    # [N, M]
    A = _as_csr(adata.layers[layer_alt]).T.tocsr()
    D = _as_csr(adata.layers[layer_depth]).T.tocsr()

    res = donor_id_vb(A, D, donors=donors, check_doublet=check_doublet, **kwargs)

    n_vars = np.asarray((D > 0).sum(axis=0)).ravel()
    assigned = assign_cells(
        res.prob,
        res.prob_doublet,
        n_vars,
        cell_names=adata.obs_names,
        donor_names=res.donor_names,
        n_vars_threshold=n_vars_threshold,
        s_threshold=s_threshold,
        d_threshold=d_threshold,
    )

    adata.obs[key_added] = pd.Categorical(assigned["donor_id"].to_numpy())
    for col in ["prob_max", "prob_doublet", "n_vars"]:
        adata.obs[col] = assigned[col].to_numpy()

    adata.obsm["donor_prob"] = res.prob
    if res.prob_doublet is not None:
        adata.obsm["doublet_prob"] = res.prob_doublet
    adata.varm["donor_genotype_inferred"] = res.genotype

    adata.uns[key_added] = {
        "donor_names": res.donor_names,
        "doublet_names": res.doublet_names,
        "theta": res.theta,
        "psi": res.psi,
        "elbo": res.elbo,
        "elbo_trace": res.elbo_trace,
        "n_iter": res.n_iter,
        "status": res.status,
        "log_likelihood": res.log_likelihood,
        "genotype_prob": res.GT_prob,
        "params": {
            "n_vars_threshold": n_vars_threshold,
            "s_threshold": s_threshold,
            "d_threshold": d_threshold,
            "check_doublet": check_doublet,
        },
    }
