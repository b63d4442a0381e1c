"""Linear calibration from raw gas signal to parts-per-million."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class CalibrationProfile:
    """Affine sensor response ``raw = slope * ppm + intercept``, inverted.

    Attributes:
        slope_raw_per_ppm: Raw counts per ppm. Must be positive for the
            inversion to mean anything; otherwise every reading collapses to
            ``minimum_ppm``.
        intercept_raw: Raw value reported at 0 ppm.
        minimum_ppm: Lower clamp applied to every output.
        maximum_ppm: Optional upper clamp.
    """

    slope_raw_per_ppm: float
    intercept_raw: float
    minimum_ppm: float
    maximum_ppm: Optional[float] = None

    @classmethod
    def default_linear(cls) -> "CalibrationProfile":
        return cls(slope_raw_per_ppm=1.0, intercept_raw=0.0, minimum_ppm=0.0)

    def ppm_from_raw(self, raw_value: float) -> float:
        if self.slope_raw_per_ppm <= 0:
            return self.minimum_ppm
        estimated = (raw_value - self.intercept_raw) / self.slope_raw_per_ppm
        clamped_low = max(self.minimum_ppm, estimated)
        if self.maximum_ppm is not None:
            return min(self.maximum_ppm, clamped_low)
        return clamped_low

    def to_dict(self) -> dict[str, Any]:
        return {
            "slopeRawPerPPM": self.slope_raw_per_ppm,
            "interceptRaw": self.intercept_raw,
            "minimumPPM": self.minimum_ppm,
            "maximumPPM": self.maximum_ppm,
        }
