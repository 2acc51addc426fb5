"""
Basic usage example of latent-sc.

This script shows the cell cycle workflow on an AnnData object:
fit the factor, decompose gene variance, correct expression.
"""

import scanpy as sc
import matplotlib.pyplot as plt
import latent_sc as lsc

# 1. Load your data
adata = sc.read_h5ad("your_data.h5ad")

# 2. Normalize and log transform
sc.pp.normalize_total(adata, target_sum=1e4)
sc.pp.log1p(adata)

# Technical noise per gene (e.g. from spike-ins); zero if unknown
if 'tech_noise' not in adata.var.columns:
    adata.var['tech_noise'] = 0.0

# 3. Fit the cell cycle factor on annotated cell cycle genes
with open("cell_cycle_genes.txt") as fh:
    cc_genes = [g for g in fh.read().split() if g in adata.var_names]
lsc.tl.fit_factor(adata, cc_genes, key='cell_cycle', k=1)

# 4. Variance decomposition (restrict to variable genes for speed)
sc.pp.highly_variable_genes(adata, n_top_genes=500)
hvg = adata.var_names[adata.var['highly_variable']]
lsc.tl.variance_decomposition(adata, ['cell_cycle'], genes=list(hvg), n_jobs=4)

print("Mean variance contributions:")
print(adata.uns['latent_sc']['variance_decomposition']['mean_contributions'])

# 5. Remove the cell cycle from expression
lsc.tl.corrected_expression(adata, key_added='cc_corrected')

# 6. Visualize
fitted = adata.var['vd_converged']
adata.var.loc[fitted, ['vd_cell_cycle', 'vd_technical_noise', 'vd_biological_noise']].plot.box()
plt.ylabel("Fraction of variance")
plt.savefig("variance_decomposition.png")

print("\nDone! Corrected expression stored in adata.layers['cc_corrected']")
