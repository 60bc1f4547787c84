from unittest.mock import Mock, patch

import pytest

from turnbuffer import main


class TestSchedulerWorker:
    def test_disabled_under_pytest(self):
        assert main._is_scheduler_worker_enabled() is False

    @patch("turnbuffer.main.run_sweep")
    @patch("turnbuffer.main.SessionLocal")
    def test_sweep_once_closes_session(self, mock_session_local, mock_run_sweep):
        db = Mock()
        mock_session_local.return_value = db
        mock_run_sweep.return_value = {"claimed": 1, "completed": 1}

        results = main._sweep_once()

        assert results == {"claimed": 1, "completed": 1}
        assert mock_run_sweep.call_args[0][0] is db
        db.close.assert_called_once()

    @patch("turnbuffer.main.run_sweep", side_effect=RuntimeError("db down"))
    @patch("turnbuffer.main.SessionLocal")
    def test_sweep_once_closes_session_on_error(self, mock_session_local, mock_run_sweep):
        db = Mock()
        mock_session_local.return_value = db

        with pytest.raises(RuntimeError):
            main._sweep_once()

        db.close.assert_called_once()
