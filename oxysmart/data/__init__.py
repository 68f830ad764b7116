"""OxySmart data layer - identity and reading models."""

from oxysmart.data.models import DeviceIdentity, Reading

__all__ = [
    "DeviceIdentity",
    "Reading",
]
