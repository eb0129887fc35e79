import numpy as np
import pandas as pd
import pytest
from scipy.sparse import issparse

import demuxpy as dx


class TestPreprocessing:
    A = np.array([[1, 0, 0], [0, 0, 0], [2, np.nan, 1]])
    D = np.array([[3, 0, 0], [0, 0, 0], [2, np.nan, 4]])

    def test_counts_to_anndata(self):
        adata = dx.pp.counts_to_anndata(
            self.A, self.D, cell_names=["c1", "c2", "c3"], variant_names=["v1", "v2", "v3"]
        )

        assert adata.shape == (3, 3)
        assert list(adata.obs_names) == ["c1", "c2", "c3"]
        assert issparse(adata.layers["A"]) and issparse(adata.layers["D"])
        # cells x variants
        assert adata.layers["D"][0, 2] == 2
        assert adata.layers["A"][2, 2] == 1
        # missing values are zero coverage
        assert adata.layers["D"][1, 2] == 0
        assert (adata.X != adata.layers["D"]).nnz == 0

    def test_counts_errors(self):
        with pytest.raises(ValueError):
            dx.pp.counts_to_anndata(np.ones((2, 3)), np.ones((3, 2)))
        with pytest.raises(ValueError):
            dx.pp.counts_to_anndata(np.full((2, 2), 3), np.ones((2, 2)))

    def test_add_donor_genotypes(self):
        adata = dx.pp.counts_to_anndata(self.A, self.D)
        genotype = pd.DataFrame({"alice": [0, 1, 2], "bob": [2, 2, np.nan]})
        dx.pp.add_donor_genotypes(adata, genotype)

        assert adata.varm["donor_genotype"].shape == (3, 2)
        assert adata.uns["donor_names"] == ["alice", "bob"]

        with pytest.raises(ValueError):
            dx.pp.add_donor_genotypes(adata, np.zeros((4, 2)))
        with pytest.raises(ValueError):
            dx.pp.add_donor_genotypes(adata, np.zeros((3, 2)), donor_names=["a"])

    def test_filter_variants(self):
        adata = dx.pp.counts_to_anndata(self.A, self.D)
        dx.pp.add_donor_genotypes(adata, np.zeros((3, 2)))

        filtered = dx.pp.filter_variants(adata, min_cells=1, inplace=False)
        assert filtered.n_vars == 2
        assert filtered.varm["donor_genotype"].shape == (2, 2)
        assert adata.n_vars == 3

        dx.pp.filter_variants(adata, min_cells=2)
        assert list(adata.var_names) == ["variant2"]
