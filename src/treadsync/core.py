"""
Core constants and settings for LifeSpan treadmill telemetry capture.
"""

from dataclasses import dataclass

# Proprietary console service (DT3-BT). One characteristic carries both the
# query writes and the response notifications.
SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
CHARACTERISTIC_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"

# Name fragments seen on LifeSpan consoles (matched case-insensitively)
DEVICE_NAME_KEYWORDS = ("lifespan", "dt3", "tr1200", "treadmill")

# Sent in order after subscribing to notifications
HANDSHAKE_COMMANDS = (
    bytes([0x02, 0x00, 0x00, 0x00, 0x00]),
    bytes([0xC2, 0x00, 0x00, 0x00, 0x00]),
    bytes([0xE9, 0xFF, 0x00, 0x00, 0x00]),
    bytes([0xE4, 0x00, 0xF4, 0x00, 0x00]),
)

# Unit conversions (the console reports imperial units)
METERS_PER_MILE = 1609.344
MPS_PER_MPH = 0.44704

# Persisted state keys
SESSION_STATE_KEY = "daily_session_state"
DEVICE_IDENTITY_KEY = "device_identity"

# Application metadata
__version__ = "0.1.0"
__description__ = "Daily step capture for LifeSpan treadmill consoles over BLE"


@dataclass
class LinkSettings:
    """Timing and retry tunables for the BLE link."""

    scan_timeout: float = 30.0
    cached_lookup_timeout: float = 5.0
    connect_timeout: float = 10.0
    subscribe_settle: float = 0.5
    handshake_delay: float = 0.1
    poll_interval: float = 0.3
    max_pending_queries: int = 10
    max_reconnect_attempts: int = 5
    silent_link_threshold: int = 3
    backoff_cap: float = 30.0


@dataclass
class SessionSettings:
    """Segmentation and plausibility tunables for the daily session."""

    idle_timeout: float = 300.0
    idle_check_interval: float = 30.0
    # Below this (m/s) the belt is treated as stopped (0.3 mph)
    moving_speed: float = 0.3 * MPS_PER_MPH
    max_steps_per_hour: float = 10000.0
    max_distance_per_hour: float = 10 * METERS_PER_MILE
    max_calories_per_hour: float = 1000.0
    ceiling_buffer: float = 2.0
    max_distance: float = 100 * METERS_PER_MILE
    max_calories: float = 10000.0
    max_segment_seconds: float = 12 * 3600
