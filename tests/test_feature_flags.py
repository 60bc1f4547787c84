from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from turnbuffer.services.feature_flags import is_feature_enabled, list_feature_flags, set_feature_flag


class TestIsFeatureEnabled:
    def test_missing_flag_defaults_to_disabled(self, db):
        assert is_feature_enabled(db, "buffering_enabled") is False

    def test_explicit_default(self, db):
        assert is_feature_enabled(db, "buffering_enabled", default=True) is True

    def test_configured_default(self, db):
        with patch("turnbuffer.services.feature_flags.settings.buffering_default_enabled", True):
            assert is_feature_enabled(db, "buffering_enabled") is True

    def test_reads_stored_value(self, db):
        set_feature_flag(db, "buffering_enabled", True)
        db.commit()
        assert is_feature_enabled(db, "buffering_enabled") is True

        set_feature_flag(db, "buffering_enabled", False)
        db.commit()
        assert is_feature_enabled(db, "buffering_enabled") is False

    def test_read_error_returns_default(self, db_session):
        db_session.query.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))

        assert is_feature_enabled(db_session, "buffering_enabled", default=False) is False
        db_session.rollback.assert_called_once()


class TestSetFeatureFlag:
    def test_creates_then_updates(self, db):
        set_feature_flag(db, "buffering_enabled", False, "Debounce bursts")
        set_feature_flag(db, "buffering_enabled", True)
        db.commit()

        flags = list_feature_flags(db)
        assert len(flags) == 1
        assert flags[0].is_enabled is True
        assert flags[0].description == "Debounce bursts"

    def test_list_is_sorted(self, db):
        set_feature_flag(db, "zeta", True)
        set_feature_flag(db, "alpha", False)
        db.commit()

        assert [flag.flag_name for flag in list_feature_flags(db)] == ["alpha", "zeta"]
