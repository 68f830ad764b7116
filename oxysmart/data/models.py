"""
OxySmart Data Models

Data classes for the device identity and the decoded readings.
Readings are immutable once the decoder has produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class DeviceIdentity:
    """How the target oximeter is recognised among advertising devices."""
    name_filter: Optional[str] = "OxySmart"
    address: Optional[str] = None

    def __post_init__(self):
        if not self.name_filter and not self.address:
            raise ValueError("DeviceIdentity needs a name filter or an address")

    def matches(self, device, advertisement_data=None) -> bool:
        """Check a scanned device (and its advertisement) against this identity.

        An explicit address wins over the name filter.
        """
        if self.address:
            return (device.address or "").upper() == self.address.upper()

        want = self.name_filter.lower()
        dev_name = (device.name or "").lower()
        local_name = (getattr(advertisement_data, "local_name", None) or "").lower()
        return want in dev_name or want in local_name

    def describe(self) -> str:
        if self.address:
            return self.address
        return f"name containing '{self.name_filter}'"


@dataclass(frozen=True)
class Reading:
    """One decoded record from the oximeter.

    ``None`` means the device reported nothing usable for that field
    (no finger, still searching, or a value outside the valid range).
    Parameter frames fill the vitals; waveform frames fill ``waveform``.
    """
    spo2: Optional[int] = None
    pulse_rate: Optional[int] = None
    perfusion_index: Optional[float] = None
    waveform: Optional[int] = None
    pulse_beat: bool = False

    @property
    def has_vitals(self) -> bool:
        """True when SpO2 or pulse rate carries a real value."""
        return self.spo2 is not None or self.pulse_rate is not None

    @property
    def is_waveform(self) -> bool:
        return self.waveform is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)
