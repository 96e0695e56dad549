import json
import logging

from lifx_lan_sync.config import Config
from lifx_lan_sync.logging import JsonFormatter, configure_logging, redact_mapping


def test_json_formatter_folds_extra_fields() -> None:
    record = logging.LogRecord("lifx.updates", logging.WARNING, __file__, 1, "Bulb update failed", None, None)
    record.device = "A1:B2"
    record.update_class = "color"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["logger"] == "lifx.updates"
    assert payload["message"] == "Bulb update failed"
    assert payload["device"] == "A1:B2"
    assert payload["update_class"] == "color"


def test_redact_mapping_hides_credentials() -> None:
    headers = {"Authorization": "Bearer abc", "X-API-Key": "k", "Accept": "application/json"}
    redacted = redact_mapping(headers)
    assert redacted["Authorization"] == "***REDACTED***"
    assert redacted["X-API-Key"] == "***REDACTED***"
    assert redacted["Accept"] == "application/json"


def test_subsystem_levels_follow_config() -> None:
    configure_logging(Config(log_level="WARNING", updates_log_level="DEBUG", log_format="json"))
    assert logging.getLogger("lifx").level == logging.WARNING
    assert logging.getLogger("lifx.updates").level == logging.DEBUG
    assert logging.getLogger("lifx.discovery").level == logging.WARNING
