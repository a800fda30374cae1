from ct2aria_cli import build_parser, main
from ct2aria_core import STATE_DB_NAME, CompletionJournal, EventLog


def test_start_without_roots_exits_non_zero(capsys):
    assert main(["start"]) == 1
    assert "no input" in capsys.readouterr().out


def test_start_rejects_non_positive_concurrency(capsys, tmp_path):
    assert main(["start", "share-1", "--concurrent", "0", "--output", str(tmp_path)]) == 1
    assert "concurrent must be greater than 0" in capsys.readouterr().out
    assert not (tmp_path / STATE_DB_NAME).exists()


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_parser_defaults_and_output_alias():
    args = build_parser().parse_args(["start", "a", "b", "--aria2-output", "/data"])
    assert args.roots == ["a", "b"]
    assert args.output == "/data"
    assert args.concurrent == 5
    assert args.aria2_endpoint == "http://127.0.0.1:6800/jsonrpc"


def test_status_reports_journal_counts(capsys, tmp_path):
    journal = CompletionJournal(str(tmp_path / STATE_DB_NAME))
    journal.record("share-1", "top/a.bin", "done", "g1")
    journal.record("share-1", "top/b.bin", "failed", "g2")
    journal.record("share-1", "top/b.bin", "failed", "g3")
    journal.record("share-2", "c.bin", "done", "g4")

    assert main(["status", "--output", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "share-1: ✅ 1 done | ❌ 1 failed" in out
    assert "share-2: ✅ 1 done | ❌ 0 failed" in out
    assert journal.roots() == ["share-1", "share-2"]


def test_status_without_journal_fails(capsys, tmp_path):
    assert main(["status", "--output", str(tmp_path)]) == 1


def test_resume_without_journal_fails(tmp_path):
    assert main(["resume", "--output", str(tmp_path)]) == 1


def test_journal_upsert_counts_attempts(tmp_path):
    journal = CompletionJournal(str(tmp_path / "nested" / STATE_DB_NAME))
    journal.record("r", "x", "failed")
    journal.record("r", "x", "done", "g")

    assert journal.load_completed("r") == ["x"]
    conn = journal._get_db_connection()
    try:
        attempts = conn.execute("SELECT attempt_count FROM files WHERE path = 'x'").fetchone()[0]
    finally:
        conn.close()
    assert attempts == 2
    assert journal.summary() == {"r": {"done": 1}}


def test_event_log_keeps_indexes_stable_when_trimmed(tmp_path):
    log_file = tmp_path / "debug.log"
    log = EventLog(log_file=str(log_file), max_lines=3)
    for i in range(5):
        log.log(f"message {i}", "warning")

    lines, index = log.get_logs(0)
    assert index == 5
    assert [line.split("] ")[-1] for line in lines] == ["message 2", "message 3", "message 4"]
    assert "[WARNING]" in lines[0]

    tail, index = log.get_logs(4)
    assert [line.split("] ")[-1] for line in tail] == ["message 4"]
    assert len(log_file.read_text(encoding="utf-8").splitlines()) == 5
