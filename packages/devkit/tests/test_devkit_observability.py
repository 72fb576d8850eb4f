from __future__ import annotations

import logging

from devkit.observability import ExtraFieldsFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="data_delivery.gate",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="gate_task_retry",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_renders_extra_fields_sorted() -> None:
    formatter = ExtraFieldsFormatter(fmt="%(message)s")
    output = formatter.format(_record(task_id="t-1", attempt=2))

    assert output == "gate_task_retry attempt=2 task_id=t-1"


def test_formatter_without_extra_fields_keeps_message() -> None:
    formatter = ExtraFieldsFormatter(fmt="%(levelname)s %(message)s")
    assert formatter.format(_record()) == "WARNING gate_task_retry"


def test_configure_logging_installs_one_handler() -> None:
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging(logging.DEBUG)
        configure_logging(logging.INFO)
        added = [handler for handler in root.handlers if handler not in before]

        assert len(added) <= 1
        assert all(isinstance(handler.formatter, ExtraFieldsFormatter) for handler in added)
        assert root.level == logging.INFO
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
