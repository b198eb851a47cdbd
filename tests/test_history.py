"""Tests for the per-transcription result history."""

from __future__ import annotations

import threading

from scribeflow.pipeline.history import ExecutionHistory


class TestExecutionHistory:
    def test_second_run_pushes_first_into_history(self):
        history = ExecutionHistory()
        history.start_new_session("raw")
        history.record_run("p1", "Cleanup", "clean text")
        history.record_run("p2", "Summary", "short text")
        assert history.current.pipeline_name == "Summary"
        assert [r.pipeline_name for r in history.results] == ["Cleanup"]
        assert history.result_count == 1

    def test_most_recent_first(self):
        history = ExecutionHistory()
        history.start_new_session("raw")
        for i in range(4):
            history.record_run("p{}".format(i), "P{}".format(i), "out{}".format(i))
        assert [r.pipeline_name for r in history.results] == ["P2", "P1", "P0"]

    def test_new_session_clears_everything(self):
        history = ExecutionHistory()
        first = history.start_new_session("one")
        history.record_run("p1", "A", "a")
        history.record_run("p2", "B", "b")
        second = history.start_new_session("two")
        assert second != first
        assert history.current is None
        assert history.results == []
        assert history.original_text == "two"

    def test_begin_run_keeps_current_during_failure(self):
        history = ExecutionHistory()
        history.start_new_session("raw")
        history.record_run("p1", "A", "a")
        history.begin_run()
        # the new run failed: nothing completed, old result is still in history
        assert history.current is None
        assert [r.result_text for r in history.results] == ["a"]

    def test_add_result_prepends(self):
        history = ExecutionHistory()
        history.add_result("p1", "A", "a")
        history.add_result("p2", "B", "b", duration_s=1.23456)
        assert [r.pipeline_id for r in history.results] == ["p2", "p1"]
        assert history.results[0].to_dict()["duration_s"] == 1.235

    def test_clear(self):
        history = ExecutionHistory()
        history.start_new_session("raw")
        history.record_run("p1", "A", "a")
        history.clear()
        assert not history.has_active_session
        assert history.recording_id is None
        assert history.results == []

    def test_concurrent_runs(self):
        history = ExecutionHistory()
        history.start_new_session("raw")

        def worker(n):
            for i in range(50):
                history.add_result("p", "w{}".format(n), str(i))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert history.result_count == 200
