import logging

import pytest
from flowstudio import BatchRunner, FlowEngine, GraphBuilder
from flowstudio.io.run_logging import (
    RUN_LOG_ENV,
    RUN_LOGGER_NAME,
    RunLoggingInstrument,
    get_run_logging_instrument,
)


def graph():
    with GraphBuilder("report") as b:
        name = b.variable("name", required=True, node_id="name")
        check = b.conditional(name, "exists", node_id="check")
        b.output(name, node_id="out", after=check.true)
        b.output("name", node_id="fallback", after=check.false)
    return b.graph


@pytest.fixture
def run_logger():
    logger = logging.getLogger("tests.run_log")
    logger.setLevel(logging.INFO)
    return logger


@pytest.fixture
def file_logger_cleanup():
    yield
    logger = logging.getLogger(RUN_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def test_run_events_are_logged(caplog, run_logger):
    with caplog.at_level(logging.INFO, logger="tests.run_log"):
        with RunLoggingInstrument(run_logger) as instrument:
            result = FlowEngine(None).run(graph(), {"name": "Ada"}, run_id="r1")

    messages = [r.getMessage() for r in caplog.records if r.name == "tests.run_log"]
    assert messages[0] == "[r1] RUN_START flow=report nodes=4"
    assert "[r1] STATE old=planning new=executing" in messages
    assert any(m.startswith("[r1] NODE id=out kind=output status=completed") for m in messages)
    assert '[r1] NODE id=fallback kind=output status=skipped reason="untaken branch"' in messages
    assert messages[-1].startswith("[r1] RUN_END status=completed completed=3 failed=0 skipped=1 tokens=0")
    assert result.succeeded
    assert instrument.get_run_stats("r1") is None


def test_failures_carry_error_kind(caplog, run_logger):
    with caplog.at_level(logging.INFO, logger="tests.run_log"):
        with RunLoggingInstrument(run_logger):
            FlowEngine(None).run(graph(), {}, run_id="r2")

    messages = [r.getMessage() for r in caplog.records if r.name == "tests.run_log"]
    assert any(m.startswith("[r2] NODE id=name kind=variable status=failed error=missing_variable") for m in messages)
    assert messages[-1].startswith("[r2] RUN_END status=failed completed=0 failed=1 skipped=3")


def test_batch_events_are_logged(caplog, run_logger):
    with caplog.at_level(logging.INFO, logger="tests.run_log"):
        with RunLoggingInstrument(run_logger):
            BatchRunner(FlowEngine(None)).run_batch(graph(), [{"name": "a"}, {}], batch_id="b1")

    messages = [r.getMessage() for r in caplog.records if r.name == "tests.run_log"]
    assert "[b1] BATCH_START flow=report rows=2 workers=2 collection=none" in messages
    assert sum(m.startswith("[b1] BATCH_PROGRESS") for m in messages) == 2
    assert "[b1] BATCH_END succeeded=1 failed=1 success_rate=50.0 tokens=0" in messages
    assert any(m.startswith("[b1-0] RUN_END status=completed") for m in messages)


def test_disabled_without_environment_variable():
    assert get_run_logging_instrument({}) is None
    assert get_run_logging_instrument({RUN_LOG_ENV: ""}) is None


def test_file_logging_from_environment(tmp_path, file_logger_cleanup):
    log_path = tmp_path / "runs.log"

    instrument = get_run_logging_instrument({RUN_LOG_ENV: str(log_path)})
    assert isinstance(instrument, RunLoggingInstrument)

    with instrument:
        FlowEngine(None).run(graph(), {"name": "Ada"}, run_id="file-run")
    for handler in logging.getLogger(RUN_LOGGER_NAME).handlers:
        handler.flush()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert lines[0].endswith("[file-run] RUN_START flow=report nodes=4")
    assert lines[0].startswith("[")
    assert any("RUN_END status=completed" in line for line in lines)
