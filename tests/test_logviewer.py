import json

from adaptive_sync.utils.logviewer import filter_lines, format_log_entry, main


def line(level="INFO", message="Searched cell", **extra):
    payload = {"timestamp": "2024-03-01 10:00:00,000", "level": level, "logger": "adaptive_sync", "message": message}
    payload.update(extra)
    return json.dumps(payload)


def test_format_includes_context_fields():
    formatted = format_log_entry(line(operation="sync_run", run_id="0123456789abcdef", cell_id="primary-0-0"))
    assert "Searched cell" in formatted
    assert "operation=sync_run" in formatted
    assert "run_id=01234567" in formatted
    assert "cell_id=primary-0-0" in formatted


def test_format_summarizes_metrics():
    formatted = format_log_entry(line(metrics={"total_requests": 9, "unique_results": 4, "efficiency_ratio": 0.44}))
    assert "requests=9" in formatted
    assert "unique=4" in formatted


def test_non_json_lines_pass_through():
    assert format_log_entry("plain text") == "plain text"


def test_filters_combine():
    lines = [
        line("DEBUG", "noise", operation="nearby_search", run_id="aaa"),
        line("WARNING", "slow", operation="sync_run", run_id="aaa111"),
        line("ERROR", "boom", operation="sync_run", run_id="bbb222"),
        "",
    ]
    assert len(list(filter_lines(lines, level="WARNING"))) == 2
    assert len(list(filter_lines(lines, operation="nearby_search"))) == 1
    kept = list(filter_lines(lines, level="INFO", run_id="aaa"))
    assert len(kept) == 1 and "slow" in kept[0]
    assert len(list(filter_lines(lines, text="BOOM"))) == 1


def test_main_prints_matching_lines(tmp_path, capsys):
    logfile = tmp_path / "adaptive_sync.log"
    logfile.write_text("\n".join([line(message="first"), line("ERROR", "second")]))
    main([str(logfile), "--level", "ERROR"])
    out = capsys.readouterr().out
    assert "second" in out
    assert "first" not in out
