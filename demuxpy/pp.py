# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from typing import Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from ._utils import _as_csr


logger = logging.getLogger("demuxpy")


def counts_to_anndata(
    A,
    D,
    cell_names: Sequence[str] | None = None,
    variant_names: Sequence[str] | None = None,
) -> AnnData:
    """
    Builds a cells x variants AnnData from variants x cells allelic counts.
    Alt read counts go to ``adata.layers["A"]``, read depths to ``adata.layers["D"]``
    and to ``adata.X``. Missing values are treated as zero coverage.

    :param A: ``[N, M]`` alt read counts, dense or sparse
    :param D: ``[N, M]`` read depths, dense or sparse
    :param cell_names: names of the M cells, defaults to None
    :type cell_names: Sequence[str] | None, optional
    :param variant_names: names of the N variants, defaults to None
    :type variant_names: Sequence[str] | None, optional
    :return: adata with sparse count layers
    :rtype: AnnData
    """
    A = _as_csr(A)
    D = _as_csr(D)

    if A.shape != D.shape:
        raise ValueError(f"A and D must have the same size, got {A.shape} and {D.shape}.")
    if (A > D).nnz > 0:
        raise ValueError("Alt read counts cannot exceed read depth.")

    N, M = D.shape
    obs = pd.DataFrame(
        index=pd.Index(
            [f"cell{i}" for i in range(M)] if cell_names is None else list(cell_names),
            dtype=str,
        )
    )
    var = pd.DataFrame(
        index=pd.Index(
            [f"variant{i}" for i in range(N)]
            if variant_names is None
            else list(variant_names),
            dtype=str,
        )
    )

    # [M, N]
    D_T = D.T.tocsr()
    adata = AnnData(X=D_T.copy(), obs=obs, var=var)
    adata.layers["A"] = A.T.tocsr()
    adata.layers["D"] = D_T

    return adata


def add_donor_genotypes(
    adata: AnnData,
    genotype: np.ndarray | pd.DataFrame,
    donor_names: Sequence[str] | None = None,
    key: str = "donor_genotype",
) -> None:
    """
    Saves known donor genotypes to ``adata.varm[key]`` and their names
    to ``adata.uns["donor_names"]``.

    :param adata: cells x variants adata
    :type adata: AnnData
    :param genotype: ``[N, K]`` genotypes with values 0, 1, 2 (NaN for missing);
        column names of a data frame are used as donor names
    :type genotype: np.ndarray | pd.DataFrame
    :param donor_names: names of the K donors, defaults to None
    :type donor_names: Sequence[str] | None, optional
    :param key: ``adata.varm`` key, defaults to "donor_genotype"
    :type key: str, optional
    """
    if isinstance(genotype, pd.DataFrame):
        if donor_names is None:
            donor_names = genotype.columns.astype(str).tolist()
        genotype = genotype.to_numpy()

    genotype = np.asarray(genotype, dtype=float)
    if genotype.ndim != 2 or genotype.shape[0] != adata.n_vars:
        raise ValueError(
            f"Genotypes must have shape [{adata.n_vars}, n_donor], got {genotype.shape}."
        )
    if donor_names is not None and len(donor_names) != genotype.shape[1]:
        raise ValueError("`donor_names` must have one name per genotype column.")

    adata.varm[key] = genotype
    adata.uns["donor_names"] = (
        [f"donor{i}" for i in range(genotype.shape[1])]
        if donor_names is None
        else list(donor_names)
    )


def filter_variants(adata: AnnData, min_cells: int = 1, inplace: bool = True):
    """
    Drops variants covered in fewer than ``min_cells`` cells.

    :param adata: cells x variants adata with read depths in ``adata.X``
    :type adata: AnnData
    :param min_cells: minimum number of cells with coverage, defaults to 1
    :type min_cells: int, optional
    :param inplace: if to subset adata in place or return a filtered copy, defaults to True
    :type inplace: bool, optional
    """
    n_before = adata.n_vars
    if not inplace:
        adata = adata.copy()

    sc.pp.filter_genes(adata, min_cells=min_cells)
    logger.info(
        "%i out of %i variants are covered in at least %i cells",
        adata.n_vars,
        n_before,
        min_cells,
    )

    if not inplace:
        return adata
