"""
Validation framework: synthetic data with known factors and recovery metrics.
"""

from .synthetic import generate_cell_cycle_data, CellCycleDataGenerator
from .recovery import factor_recovery, kernel_diagnostics

__all__ = [
    "generate_cell_cycle_data",
    "CellCycleDataGenerator",
    "factor_recovery",
    "kernel_diagnostics",
]
