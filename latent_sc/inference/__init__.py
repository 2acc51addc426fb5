"""
GPLVM inference: latent coordinates for a gene set.

Fits p(Y_sub | X) with a linear kernel by maximum a posteriori.
"""

from .model import LinearGPLVM
from .trainer import GPLVMTrainer, ConvergenceMonitor

__all__ = [
    "LinearGPLVM",
    "GPLVMTrainer",
    "ConvergenceMonitor",
]
