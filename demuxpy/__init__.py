"""
Donor deconvolution of pooled single-cell data from allelic read counts:

1. Inputs
    - A: alt allele read counts, variants x cells (sparse)
    - D: read depth at the same variants, variants x cells (sparse)
    - either known donor genotypes (0, 1, 2 alt copies per variant)
        or the number of donors K to infer

2. Variational inference (single run), repeated until the lower bound converges
    - beta error model: beta distribution of the alt allele fraction per genotype,
        updated from genotype-weighted read counts after a burn-in
    - cell assignment: posterior over K donors (and K(K-1)/2 donor pairs)
        from digamma expectations of the beta error model
    - genotype posterior per donor and variant (skipped if genotypes are given)
    - evidence lower bound for convergence

3. Doublets
    - donor pairs get combined genotypes 0, 0.5, 1, 1.5, 2 and moment matched
        beta shapes for 0.5 and 1.5

4. Restarts
    - several independent runs, the one with the highest lower bound is kept
    - without genotypes, the first pass uses ceil(1.5 * K) donors,
        the K largest of them seed a second run with K donors

5. Classification
    - "unassigned" / "doublet" / donor label per cell by probability thresholds
        and a minimum number of covered variants
"""

from . import pp
from . import tl
from . import datasets
from .vb import DonorVB, FixedGenotypes, InferredDonors, VBResult
