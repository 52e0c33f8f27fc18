from typing import Union

import torch

from ..errors import ShapeError


def _as_time(t: Union[float, torch.Tensor], ref: torch.Tensor) -> torch.Tensor:
    return torch.as_tensor(t, dtype=ref.dtype, device=ref.device).reshape(1)


class Interpolation:
    """
    Looks up forcing values at arbitrary times.

    Args:
        data (torch.Tensor): Samples with time on the last axis, shape (..., T).
        time_points (torch.Tensor): Strictly increasing sample times, shape (T,).
    """

    def __init__(self, data: torch.Tensor, time_points: torch.Tensor):
        time_points = torch.as_tensor(time_points, device=data.device)
        if time_points.dim() != 1 or time_points.shape[0] != data.shape[-1]:
            raise ShapeError(
                f"Time points of shape {tuple(time_points.shape)} do not match "
                f"the time axis of data with shape {tuple(data.shape)}"
            )
        if time_points.shape[0] > 1 and not bool(
            torch.all(time_points[1:] > time_points[:-1])
        ):
            raise ShapeError("Time points must be strictly increasing.")
        self.data = data
        self.time_points = time_points.to(dtype=data.dtype)

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        raise NotImplementedError


class DirectInterpolation(Interpolation):
    """Returns the first sample taken at or after ``t`` (no blending)."""

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        t = _as_time(t, self.time_points)
        idx = torch.searchsorted(self.time_points, t).clamp(
            max=self.time_points.shape[0] - 1
        )
        return self.data[..., idx[0]]


class LinearInterpolation(Interpolation):
    """Piecewise linear interpolation, extrapolating linearly at both ends."""

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        n = self.time_points.shape[0]
        if n == 1:
            return self.data[..., 0]
        t = _as_time(t, self.time_points)
        idx = torch.searchsorted(self.time_points, t, right=True).clamp(1, n - 1)[0]
        t0, t1 = self.time_points[idx - 1], self.time_points[idx]
        w = (t[0] - t0) / (t1 - t0)
        return self.data[..., idx - 1] + w * (self.data[..., idx] - self.data[..., idx - 1])


INTERPOLATIONS = {
    "direct": DirectInterpolation,
    "linear": LinearInterpolation,
}
