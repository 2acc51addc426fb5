"""
Optimization loop for the GPLVM factor fit.

Minimizes the negative log joint with L-BFGS and stops once the relative
change of the objective between outer steps drops below the tolerance.
"""

import logging
import numpy as np
import torch
from typing import Dict, List, Optional
from tqdm import tqdm

from .model import LinearGPLVM
from ..errors import ConvergenceError, NumericalInstabilityError
from ..settings import GPLVMSettings

logger = logging.getLogger(__name__)


class GPLVMTrainer:
    """
    Trainer for the MAP linear GPLVM.

    Parameters
    ----------
    model : LinearGPLVM
        Model to optimize in place
    settings : Optional[GPLVMSettings]
        Iteration caps and tolerance
    """

    def __init__(
        self,
        model: LinearGPLVM,
        settings: Optional[GPLVMSettings] = None,
    ):
        self.model = model
        self.settings = settings if settings is not None else GPLVMSettings()

        self.optimizer = torch.optim.LBFGS(
            self.model.parameters(),
            lr=1.0,
            max_iter=self.settings.lbfgs_iter,
            tolerance_grad=1e-10,
            tolerance_change=1e-14,
            line_search_fn="strong_wolfe",
        )

        # Training history
        self.loss_history = []

    def _closure(self) -> torch.Tensor:
        self.optimizer.zero_grad()
        loss = self.model()
        loss.backward()
        return loss

    def train(self) -> Dict[str, List[float]]:
        """
        Run L-BFGS until convergence.

        Returns
        -------
        history : Dict[str, List[float]]
            Objective value after every outer step

        Raises
        ------
        ConvergenceError
            Tolerance not reached within ``max_steps`` outer steps
        NumericalInstabilityError
            The objective became non-finite
        """
        monitor = ConvergenceMonitor(tol=self.settings.tol)

        iterator = range(self.settings.max_steps)
        if self.settings.verbose:
            iterator = tqdm(iterator, desc="GPLVM")

        for step in iterator:
            self.optimizer.step(self._closure)

            with torch.no_grad():
                loss = float(self.model())

            if not np.isfinite(loss):
                raise NumericalInstabilityError(
                    f"GPLVM objective became non-finite at step {step}"
                )

            self.loss_history.append(loss)

            if self.settings.verbose:
                iterator.set_postfix({"loss": loss})

            if monitor(loss):
                logger.info(f"GPLVM converged after {step + 1} steps (loss={loss:.4f})")
                return {"loss": self.loss_history}

        raise ConvergenceError(
            f"GPLVM did not converge in {self.settings.max_steps} steps "
            f"(last relative change {monitor.last_change:.2e}, tol={self.settings.tol:.1e})"
        )


class ConvergenceMonitor:
    """
    Relative-change stopping rule.

    Reports convergence once ``|previous - current| <= tol * max(|previous|, 1)``.

    Parameters
    ----------
    tol : float
        Relative tolerance on the objective
    """

    def __init__(
        self,
        tol: float = 1e-6,
    ):
        self.tol = tol
        self.previous = None
        self.last_change = float('inf')

    def __call__(
        self,
        loss: float,
    ) -> bool:
        """
        Record a new objective value.

        Returns
        -------
        converged : bool
            Whether the change from the previous value is within tolerance
        """
        if self.previous is None:
            self.previous = loss
            return False

        self.last_change = abs(self.previous - loss) / max(abs(self.previous), 1.0)
        self.previous = loss
        return self.last_change <= self.tol
