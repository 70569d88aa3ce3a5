"""Console telemetry decoding and snapshot deduplication.

The decoder turns telemetry frames into immutable ``StateSnapshot`` values and
owns the decision of whether anything meaningful changed. A snapshot is only
published when it differs from the previously published one; the first snapshot
is always published.

Frame payload keys (all optional):

- ``power_state``: ``PowerState`` name or console enumeration (0 off, 1 on,
  2 standby, 3 updating, 4 unknown)
- ``reference``: application reference string of the active content
- ``title_id``: numeric title identifier of the active content
- ``volume``: 0-100
- ``mute``: bool
- ``media_state``: ``MediaState`` name or enumeration (0 stopped, 1 playing,
  2 paused, 3 unknown)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

LOGGER = logging.getLogger(__name__)


class PowerState(str, Enum):
    OFF = "off"
    ON = "on"
    STANDBY = "standby"
    UPDATING = "updating"
    UNKNOWN = "unknown"


class MediaState(str, Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"
    UNKNOWN = "unknown"


_POWER_BY_INDEX = (
    PowerState.OFF,
    PowerState.ON,
    PowerState.STANDBY,
    PowerState.UPDATING,
    PowerState.UNKNOWN,
)

_POWER_ALIASES = {
    "connectedstandby": PowerState.STANDBY,
    "instandby": PowerState.STANDBY,
    "systemupdate": PowerState.UPDATING,
}

_MEDIA_BY_INDEX = (
    MediaState.STOPPED,
    MediaState.PLAYING,
    MediaState.PAUSED,
    MediaState.UNKNOWN,
)

# Power projection policy: the console is "on" for the hub while it runs,
# including during a system update. Standby reads as off.
_POWERED = frozenset({PowerState.ON, PowerState.UPDATING})


@dataclass(slots=True, frozen=True)
class StateSnapshot:
    """Canonical, deduplicated view of console state."""

    power: bool = False
    content: Optional[str] = None
    volume: int = 0
    mute: bool = False
    media: MediaState = MediaState.UNKNOWN

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["media"] = self.media.value
        return payload


def parse_power_state(value: Any) -> PowerState:
    """Map a console power report onto ``PowerState``."""

    if isinstance(value, PowerState):
        return value
    if isinstance(value, bool):
        return PowerState.ON if value else PowerState.OFF
    if isinstance(value, int):
        if 0 <= value < len(_POWER_BY_INDEX):
            return _POWER_BY_INDEX[value]
        return PowerState.UNKNOWN
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _POWER_ALIASES:
            return _POWER_ALIASES[normalized]
        try:
            return PowerState(normalized)
        except ValueError:
            return PowerState.UNKNOWN
    return PowerState.UNKNOWN


def parse_media_state(value: Any) -> MediaState:
    """Map a console playback report onto ``MediaState``."""

    if isinstance(value, MediaState):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(_MEDIA_BY_INDEX):
            return _MEDIA_BY_INDEX[value]
        return MediaState.UNKNOWN
    if isinstance(value, str):
        try:
            return MediaState(value.strip().lower())
        except ValueError:
            return MediaState.UNKNOWN
    return MediaState.UNKNOWN


def is_powered(state: PowerState) -> bool:
    return state in _POWERED


def _clamp_volume(value: Any, fallback: int) -> int:
    try:
        volume = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(0, min(100, volume))


SnapshotListener = Callable[[StateSnapshot], None]


class TelemetryDecoder:
    """Derives snapshots from telemetry frames and emits them on change."""

    def __init__(self, listener: Optional[SnapshotListener] = None) -> None:
        self._listener = listener
        self._current = StateSnapshot()
        self._last_emitted: Optional[StateSnapshot] = None
        self._power_state = PowerState.UNKNOWN
        self._frames = 0

    @property
    def snapshot(self) -> Optional[StateSnapshot]:
        """Last emitted snapshot, ``None`` before the first frame."""
        return self._last_emitted

    @property
    def power_state(self) -> PowerState:
        return self._power_state

    @property
    def frames_decoded(self) -> int:
        return self._frames

    def decode(self, payload: Mapping[str, Any]) -> StateSnapshot:
        """Build the snapshot a payload describes, without emitting it."""

        previous = self._current

        power = previous.power
        if "power_state" in payload:
            power = is_powered(parse_power_state(payload["power_state"]))

        content = previous.content
        reference = payload.get("reference")
        title_id = payload.get("title_id")
        if isinstance(reference, str) and reference:
            content = reference
        elif title_id not in (None, "", 0):
            content = str(title_id)

        volume = previous.volume
        if "volume" in payload:
            volume = _clamp_volume(payload["volume"], previous.volume)

        mute = previous.mute
        if "mute" in payload and payload["mute"] is not None:
            mute = bool(payload["mute"])

        media = previous.media
        if "media_state" in payload:
            media = parse_media_state(payload["media_state"])

        return StateSnapshot(
            power=power, content=content, volume=volume, mute=mute, media=media
        )

    def feed(self, payload: Mapping[str, Any]) -> Optional[StateSnapshot]:
        """Decode a telemetry payload; return the snapshot if it was emitted."""

        self._frames += 1
        if "power_state" in payload:
            self._power_state = parse_power_state(payload["power_state"])

        snapshot = self.decode(payload)
        self._current = snapshot

        if snapshot == self._last_emitted:
            LOGGER.debug("Telemetry frame produced no state change")
            return None

        self._last_emitted = snapshot
        if self._listener is not None:
            self._listener(snapshot)
        return snapshot

    def mark_offline(self) -> Optional[StateSnapshot]:
        """Record that the console is unreachable."""

        return self.feed({"power_state": PowerState.OFF})
