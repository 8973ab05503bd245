"""Box-constrained quadratic programming for control-limited steps."""
