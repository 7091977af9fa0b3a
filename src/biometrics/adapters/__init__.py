"""Device adapters for Wellpulse.

Each adapter implements the DeviceAdapter ABC and handles:
- Credential checks and device binding
- Fetching readings from the vendor (or buffering pushed uploads)
- Normalizing vendor JSON into canonical BiometricReading objects

Available adapters:
    AppleWatchAdapter   - HealthKit uploads from the companion app
    FitbitAdapter       - Fitbit Web API (OAuth2 tokens)
    GarminAdapter       - Garmin Health API
    CustomDeviceAdapter - Deterministic simulator for development
"""

from src.biometrics.adapters.apple_watch import AppleWatchAdapter
from src.biometrics.adapters.base import (
    ConnectionResult,
    DeviceAdapter,
    DeviceCredentials,
)
from src.biometrics.adapters.custom import CustomDeviceAdapter
from src.biometrics.adapters.fitbit import FitbitAdapter
from src.biometrics.adapters.garmin import GarminAdapter
from src.biometrics.base import DataType, DeviceType

__all__ = [
    "AppleWatchAdapter",
    "ConnectionResult",
    "CustomDeviceAdapter",
    "DeviceAdapter",
    "DeviceCredentials",
    "FitbitAdapter",
    "GarminAdapter",
]

# Registry: device type → adapter class
ADAPTER_REGISTRY: dict[DeviceType, type[DeviceAdapter]] = {
    DeviceType.APPLE_WATCH: AppleWatchAdapter,
    DeviceType.FITBIT: FitbitAdapter,
    DeviceType.GARMIN: GarminAdapter,
    DeviceType.CUSTOM: CustomDeviceAdapter,
}


def get_adapter(device_type: DeviceType | str) -> type[DeviceAdapter]:
    """Return the adapter class for a device type.

    Args:
        device_type: e.g. 'apple_watch', 'fitbit', 'garmin', 'custom'

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the device type is not registered.
    """
    try:
        return ADAPTER_REGISTRY[DeviceType(device_type)]
    except ValueError:
        raise KeyError(
            f"No adapter registered for device type '{device_type}'. "
            f"Available: {[t.value for t in ADAPTER_REGISTRY]}"
        ) from None


def get_capabilities(device_type: DeviceType | str) -> list[DataType]:
    """Return the data types a device type can produce."""
    return list(get_adapter(device_type).CAPABILITIES)
