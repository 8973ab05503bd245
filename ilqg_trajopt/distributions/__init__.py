"""Linear-Gaussian trajectory distributions and their KL divergence."""
