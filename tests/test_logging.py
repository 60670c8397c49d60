from loguru import logger

from medrag.core.logging import PipelineLogger


def test_debug_logger_writes_run_file(tmp_path):
    run_logger = PipelineLogger("run42", debug=True, log_dir=str(tmp_path))
    try:
        run_logger.on_run_start("medrag", "run42")
        run_logger.on_artifact("Search Queries", {"keyword_query": "x" * 5000}, depth=1)
        run_logger.on_step_fallback("FusedSearchStep", "ConnectionError: es down", 0)
        run_logger.log_summary("SUMMARY TABLE")
    finally:
        run_logger.close()

    content = (tmp_path / "pipeline_debug_run42.log").read_text(encoding="utf-8")
    assert "LAUNCHING PIPELINE: medrag (ID: run42)" in content
    assert "Search Queries" in content
    assert "[truncated 1000 chars]" in content
    assert "!!! FALLBACK: FusedSearchStep" in content
    assert "SUMMARY TABLE" in content


def test_other_runs_are_filtered_out(tmp_path):
    first = PipelineLogger("a", debug=True, log_dir=str(tmp_path))
    second = PipelineLogger("b", debug=True, log_dir=str(tmp_path))
    try:
        first.on_run_start("p", "a")
        second.on_run_start("p", "b")
    finally:
        first.close()
        second.close()

    assert "(ID: b)" not in (tmp_path / "pipeline_debug_a.log").read_text(encoding="utf-8")
    assert "(ID: a)" not in (tmp_path / "pipeline_debug_b.log").read_text(encoding="utf-8")


def test_quiet_logger_is_a_no_op(tmp_path):
    run_logger = PipelineLogger("quiet", debug=False, log_dir=str(tmp_path))
    run_logger.on_run_start("medrag", "quiet")
    run_logger.log_summary("x")
    run_logger.close()
    assert list(tmp_path.iterdir()) == []


def test_close_removes_sinks(tmp_path):
    run_logger = PipelineLogger("closing", debug=True, log_dir=str(tmp_path))
    run_logger.close()
    logger.bind(run_id="closing").debug("after close")
    assert "after close" not in (tmp_path / "pipeline_debug_closing.log").read_text(encoding="utf-8")
