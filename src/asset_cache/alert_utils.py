import json
import logging
import os
import ssl
import urllib.request

import certifi

from .cache_types import PressureLevel

logger = logging.getLogger(__name__)

# Least to most severe
_SEVERITY = {
    PressureLevel.LOW: 0,
    PressureLevel.MEDIUM: 1,
    PressureLevel.HIGH: 2,
    PressureLevel.CRITICAL: 3,
}


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


def _min_alert_level() -> PressureLevel:
    raw = os.environ.get("ASSET_CACHE_ALERT_MIN_LEVEL", "critical").strip().lower()
    try:
        return PressureLevel(raw)
    except ValueError:
        logger.debug(f"Unknown ASSET_CACHE_ALERT_MIN_LEVEL={raw!r}, using critical")
        return PressureLevel.CRITICAL


def _ssl_context() -> ssl.SSLContext:
    if not _env_flag("ASSET_CACHE_ALERT_VERIFY_SSL", "true"):
        logger.debug("Alert webhook SSL verify=OFF (unverified)")
        return ssl._create_unverified_context()
    return ssl.create_default_context(cafile=certifi.where())


def _build_payload(
    pressure_level: PressureLevel, memory_percent: float, services_name: str
) -> dict:
    return {
        "text": (
            f"Asset cache memory pressure is {pressure_level.value} "
            f"({memory_percent:.1f}% RAM used)"
        ),
        "attachments": [
            {
                "color": "danger" if pressure_level is PressureLevel.CRITICAL else "warning",
                "fields": [
                    {"title": "Cache", "value": services_name, "short": True},
                    {"title": "Pressure", "value": pressure_level.value, "short": True},
                    {"title": "RAM Used", "value": f"{memory_percent:.1f}%", "short": True},
                ],
            }
        ],
    }


def _post_json(url: str, payload: dict) -> int | None:
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=5, context=_ssl_context()) as resp:
        code = getattr(resp, "status", None) or getattr(resp, "code", None)
        return int(code) if isinstance(code, int) else None


def send_pressure_alert_if_needed(
    pressure_level: PressureLevel,
    memory_percent: float,
    services_name: str,
) -> tuple[bool, int | None]:
    """Post a webhook alert if configured and the pressure level is high enough.

    Returns a tuple: (attempted, status_code). If not attempted, status_code is None.
    """
    alerts_enabled = _env_flag("ASSET_CACHE_ALERTS_ENABLED", "false")
    webhook_url = os.environ.get("ASSET_CACHE_ALERT_WEBHOOK_URL")
    min_level = _min_alert_level()
    logger.debug(
        f"Alert check: enabled={alerts_enabled} pressure={pressure_level.value} "
        f"min_level={min_level.value} has_webhook={'yes' if webhook_url else 'no'}"
    )

    if not (alerts_enabled and webhook_url):
        return False, None
    if _SEVERITY[pressure_level] < _SEVERITY[min_level]:
        return False, None

    try:
        logger.info(f"Sending memory pressure alert for {services_name}")
        code = _post_json(webhook_url, _build_payload(pressure_level, memory_percent, services_name))
    except Exception as alert_err:  # noqa: BLE001
        logger.warning(f"Memory pressure alert failed: {alert_err}")
        return True, None

    logger.info(f"Memory pressure alert sent, status={code}")
    return True, code
