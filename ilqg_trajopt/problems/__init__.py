"""Benchmark problems and derivative providers.

Finite differences, sympy-compiled exact derivatives, a linear-quadratic
problem and the car-parking benchmark.
"""
