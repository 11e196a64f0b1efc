"""
Thermal zone reader for Linux
Reads a CPU temperature in whole degrees Celsius from sysfs
"""

from pathlib import Path
from typing import Union


class SensorUnavailable(Exception):
    """No usable temperature sample could be taken this cycle"""


def read_temperature(source: Union[str, Path]) -> int:
    """Read a millidegree sysfs value and return whole degrees Celsius"""
    path = Path(source)
    try:
        value = path.read_text().strip()
    except (OSError, UnicodeDecodeError) as e:
        raise SensorUnavailable(f"Cannot read {path}: {e}") from e

    try:
        raw = int(value)
    except ValueError as e:
        raise SensorUnavailable(f"Invalid reading from {path}: {value!r}") from e

    # Truncate toward zero, not toward -inf
    temp_c = abs(raw) // 1000
    if raw < 0:
        temp_c = -temp_c

    # Zero or below is what a dead sensor looks like
    if temp_c <= 0:
        raise SensorUnavailable(f"Sentinel reading from {path}: {value!r}")

    return temp_c


class ThermalSensor:
    """A single thermal zone, e.g. /sys/class/thermal/thermal_zone0/temp"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> int:
        return read_temperature(self.path)

    def __repr__(self):
        return f"ThermalSensor({str(self.path)!r})"
