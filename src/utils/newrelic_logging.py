"""New Relic logging integration helpers."""

from collections.abc import MutableMapping
from typing import Any

import newrelic.agent


def newrelic_error_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor that reports error-level log lines to New Relic.

    Passes every event through unchanged. notice_error is a no-op when the
    agent has not been initialized, so local runs and tests are unaffected.
    """
    if method_name in ("error", "critical"):
        newrelic.agent.notice_error()

    return event_dict
