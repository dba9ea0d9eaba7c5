# services/notices.py
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    """A non-fatal side effect outcome, e.g. a skipped watermark or a lost usage increment."""
    kind: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


NoticeSink = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    """Default sink: notices are logged, never raised."""
    logger.warning(notice.message, extra={"notice_kind": notice.kind, "notice_detail": notice.detail})


class CollectingNoticeSink:
    """Keeps notices in memory, used to report them back alongside a result."""

    def __init__(self, forward: NoticeSink = log_notice):
        self.notices = []
        self._forward = forward

    def __call__(self, notice: Notice) -> None:
        self.notices.append(notice)
        self._forward(notice)
