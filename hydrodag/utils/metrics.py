from typing import Tuple

import torch
import torch.nn as nn
from torchmetrics.functional import mean_squared_error, pearson_corrcoef


def _mask(y_pred: torch.Tensor, y_true: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Flattens both series and drops time steps with missing observations."""
    y_pred, y_true = torch.broadcast_tensors(y_pred, y_true)
    valid = ~torch.isnan(y_true)
    return y_pred[valid], y_true[valid]


def rmse(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    """Root mean squared error over the observed time steps."""
    y_pred, y_true = _mask(y_pred, y_true)
    return torch.sqrt(mean_squared_error(y_pred, y_true))


def nse(y_pred: torch.Tensor, y_true: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    """
    Nash-Sutcliffe Efficiency.

    Parameters
    ----------
    y_pred
        Simulated series.
    y_true
        Observed series; NaN marks a missing observation.
    eps
        Guards against a constant observed series.

    Returns
    -------
    torch.Tensor
        1 for a perfect match, 0 when the simulation is as good as the observed mean.
    """
    y_pred, y_true = _mask(y_pred, y_true)
    mse = mean_squared_error(y_pred, y_true)
    variance = torch.mean(torch.pow(y_true - torch.mean(y_true), 2))
    return 1 - mse / (variance + eps)


def kge(y_pred: torch.Tensor, y_true: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    """
    Kling-Gupta Efficiency combining correlation, bias and variability.

    Parameters
    ----------
    y_pred
        Simulated series.
    y_true
        Observed series; NaN marks a missing observation.
    eps
        Guards the ratios against zero means and deviations.

    Returns
    -------
    torch.Tensor
        The KGE value, 1 for a perfect match.
    """
    y_pred, y_true = _mask(y_pred, y_true)
    r = pearson_corrcoef(y_pred, y_true)
    mean_pred, mean_true = torch.mean(y_pred), torch.mean(y_true)
    beta = mean_pred / (mean_true + eps)
    gamma = (torch.std(y_pred) / (mean_pred + eps)) / (
        torch.std(y_true) / (mean_true + eps) + eps
    )
    return 1 - torch.sqrt((r - 1) ** 2 + (beta - 1) ** 2 + (gamma - 1) ** 2)


class NSELoss(nn.Module):
    """
    Nash-Sutcliffe Efficiency loss.

    Returns 1 - NSE, so that minimizing the loss maximizes the NSE.
    """

    def __init__(self, eps: float = 1e-6):
        super(NSELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        return 1 - nse(y_pred, y_true, self.eps)


class LogNSELoss(nn.Module):
    """
    Logarithm of the normalized squared error, ``log(1 + (1 - NSE))``.

    Less dominated by peak flows than ``NSELoss``.
    """

    def __init__(self, eps: float = 1e-6):
        super(LogNSELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        return torch.log(1 - nse(y_pred, y_true, self.eps) + 1)


class KGELoss(nn.Module):
    """
    Kling-Gupta Efficiency loss.

    Returns 1 - KGE, so that minimizing the loss maximizes the KGE.
    """

    def __init__(self, eps: float = 1e-6):
        super(KGELoss, self).__init__()
        self.eps = eps

    def forward(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
        return 1 - kge(y_pred, y_true, self.eps)
