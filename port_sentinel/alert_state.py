from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AlertRecord:
    last_alert_ts: float
    currently_failed: bool = True


class AlertState:
    """
    Per-device alert bookkeeping: decides whether a failing device should
    fire, stay quiet because of the cooldown, or be cleared on recovery.

    Records only exist while a device is marked failed. The time of the last
    alert is kept separately and survives a recovery, so a device that flaps
    back down inside its cooldown window stays quiet.

    Not safe for concurrent use on its own; callers hold one asyncio.Lock
    around every call.
    """

    def __init__(self) -> None:
        self._records: dict[str, AlertRecord] = {}
        self._last_alert_ts: dict[str, float] = {}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def is_failed(self, device_id: str) -> bool:
        record = self._records.get(device_id)
        return bool(record and record.currently_failed)

    def last_alert_ts(self, device_id: str) -> float | None:
        return self._last_alert_ts.get(device_id)

    def should_alert(self, device_id: str, currently_failed: bool, now: float, cooldown: float) -> bool:
        if not currently_failed:
            # Recovery is silent: clear the failed marker, never notify.
            self._records.pop(device_id, None)
            return False

        last = self._last_alert_ts.get(device_id)
        if last is not None and float(now) - last < float(cooldown):
            return False

        now = float(now)
        self._last_alert_ts[device_id] = now
        self._records[device_id] = AlertRecord(last_alert_ts=now, currently_failed=True)
        return True

    def mark_recovered(self, device_id: str) -> bool:
        return self._records.pop(device_id, None) is not None
