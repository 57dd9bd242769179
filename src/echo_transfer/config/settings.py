"""
Centralized configuration for echo_transfer.

Settings can be overridden via environment variables:
- ECHO_MAX_TRANSFER_VOLUME: Largest single transfer in nL (default: 500)
- ECHO_DROPLET_SIZE: Droplet quantum in nL (default: 2.5)
- ECHO_SOURCE_PLATE_SIZE: Source plate format, 384 or 1536 (default: 384)
- ECHO_DESTINATION_PLATE_SIZE: Destination plate format, 96, 384 or 1536 (default: 384)
- ECHO_LOW_DEAD_VOLUME / ECHO_HIGH_DEAD_VOLUME: Dead volumes in nL
- ECHO_DEAD_VOLUME_THRESHOLD: Aliquot volume above which a plate uses the high dead volume
- ECHO_SOLVENT: Solvent name (default: DMSO)
- ECHO_LOG_LEVEL: Logging level (default: INFO)
"""

import logging
import os
from dataclasses import dataclass

from . import defaults

logger = logging.getLogger(__name__)


def _plate_size_or_default(value: str, allowed, default: str, label: str) -> str:
    value = str(value).strip()
    if value not in allowed:
        logger.warning(
            f"Unsupported {label} plate size {value!r}; using {default}"
        )
        return default
    return value


@dataclass
class EchoSettings:
    """Instrument and plate settings shared by the planner."""

    max_transfer_volume: float = defaults.DEFAULT_MAX_TRANSFER_VOLUME_NL
    droplet_size: float = defaults.DEFAULT_DROPLET_SIZE_NL
    source_plate_size: str = defaults.DEFAULT_SOURCE_PLATE_SIZE
    destination_plate_size: str = defaults.DEFAULT_DESTINATION_PLATE_SIZE
    intermediate_plate_size: str = defaults.INTERMEDIATE_PLATE_SIZE
    low_dead_volume: float = defaults.LOW_DEAD_VOLUME_NL
    high_dead_volume: float = defaults.HIGH_DEAD_VOLUME_NL
    dead_volume_threshold: float = defaults.DEAD_VOLUME_THRESHOLD_NL
    solvent_name: str = defaults.DEFAULT_SOLVENT
    log_level: str = defaults.DEFAULT_LOG_LEVEL

    def __post_init__(self):
        self.source_plate_size = _plate_size_or_default(
            self.source_plate_size,
            defaults.ALLOWED_SOURCE_PLATE_SIZES,
            defaults.DEFAULT_SOURCE_PLATE_SIZE,
            "source",
        )
        self.destination_plate_size = _plate_size_or_default(
            self.destination_plate_size,
            defaults.ALLOWED_DESTINATION_PLATE_SIZES,
            defaults.DEFAULT_DESTINATION_PLATE_SIZE,
            "destination",
        )
        if self.droplet_size <= 0:
            raise ValueError(f"droplet_size must be positive, got {self.droplet_size}")
        if self.max_transfer_volume < self.droplet_size:
            raise ValueError(
                f"max_transfer_volume ({self.max_transfer_volume}) is smaller "
                f"than droplet_size ({self.droplet_size})"
            )

    def dead_volume_for(self, aliquot_volume: float) -> float:
        """Dead volume implied by the largest aliquot recorded on a plate."""
        if aliquot_volume > self.dead_volume_threshold:
            return self.high_dead_volume
        return self.low_dead_volume

    @classmethod
    def load_from_env(cls) -> "EchoSettings":
        """Load settings from environment variables."""
        return cls(
            max_transfer_volume=float(
                os.getenv("ECHO_MAX_TRANSFER_VOLUME", str(defaults.DEFAULT_MAX_TRANSFER_VOLUME_NL))
            ),
            droplet_size=float(
                os.getenv("ECHO_DROPLET_SIZE", str(defaults.DEFAULT_DROPLET_SIZE_NL))
            ),
            source_plate_size=os.getenv("ECHO_SOURCE_PLATE_SIZE", defaults.DEFAULT_SOURCE_PLATE_SIZE),
            destination_plate_size=os.getenv(
                "ECHO_DESTINATION_PLATE_SIZE", defaults.DEFAULT_DESTINATION_PLATE_SIZE
            ),
            low_dead_volume=float(
                os.getenv("ECHO_LOW_DEAD_VOLUME", str(defaults.LOW_DEAD_VOLUME_NL))
            ),
            high_dead_volume=float(
                os.getenv("ECHO_HIGH_DEAD_VOLUME", str(defaults.HIGH_DEAD_VOLUME_NL))
            ),
            dead_volume_threshold=float(
                os.getenv("ECHO_DEAD_VOLUME_THRESHOLD", str(defaults.DEAD_VOLUME_THRESHOLD_NL))
            ),
            solvent_name=os.getenv("ECHO_SOLVENT", defaults.DEFAULT_SOLVENT),
            log_level=os.getenv("ECHO_LOG_LEVEL", defaults.DEFAULT_LOG_LEVEL),
        )


# Global settings instance
settings = EchoSettings.load_from_env()
