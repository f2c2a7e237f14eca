"""Numerical engine: decomposition, jump-diffusion fit, simulation and pricing."""
