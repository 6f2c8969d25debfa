import io
import logging

from margin_guard import logging_setup


def test_redact_masks_mapping_values_and_query_parameters() -> None:
    command = {"accountId": "acct-1", "api_key": "k-123", "password": "hunter2"}

    assert logging_setup.redact(str(command)) == (
        "{'accountId': 'acct-1', 'api_key': '***REDACTED***', 'password': '***REDACTED***'}"
    )
    assert logging_setup.redact("close?ticket=42&signature=abc123&lots=0.5") == (
        "close?ticket=42&signature=***REDACTED***&lots=0.5"
    )


def test_reconfiguring_replaces_the_installed_handler() -> None:
    first, second = io.StringIO(), io.StringIO()
    logging_setup.configure_logging(debug=1, stream_target=first)
    root = logging_setup.configure_logging(debug=1, stream_target=second)

    logging.getLogger("margin_guard.monitoring").warning("Margin level for %s fell to %.1f%%", "acct-1", 142.0)

    installed = [handler for handler in root.handlers if getattr(handler, "_margin_guard_handler", False)]
    assert len(installed) == 1
    assert first.getvalue() == ""
    assert "Margin level for acct-1 fell to 142.0%" in second.getvalue()


def test_debug_zero_keeps_info_out_of_the_stream() -> None:
    stream = io.StringIO()
    logging_setup.configure_logging(debug=0, stream_target=stream)
    logger = logging.getLogger("margin_guard.engine")

    logger.info("Emergency response started")
    logger.warning("Emergency response suppressed")

    output = stream.getvalue()
    assert "started" not in output
    assert "suppressed" in output
    assert logging_setup.debug_to_logging_level(3) == logging.DEBUG


def test_loggers_with_private_handlers_are_redacted_too() -> None:
    logging_setup.configure_logging(debug=2, stream_target=io.StringIO())
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(message)s"))

    broker_logger = logging.getLogger("broker.bridge")
    broker_logger.handlers = [handler]
    broker_logger.propagate = False
    broker_logger.setLevel(logging.DEBUG)

    broker_logger.debug("login %s", {"api_secret": "leaky", "token": "should-hide"})

    output = stream.getvalue()
    assert "leaky" not in output
    assert "should-hide" not in output
    assert output.count(logging_setup.REDACTED) == 2
