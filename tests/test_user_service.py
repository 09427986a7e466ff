"""
tests/test_user_service.py — Profiles, Search & Presence Mirror
=================================================================
"""

from __future__ import annotations

import pytest

from agora.errors import ConflictError, NotFoundError
from agora.services import user_service as svc
from conftest import make_user


class TestProfiles:
    def test_public_view_hides_private_fields(self, db_engine):
        uid = make_user(db_engine, "ada")
        public = svc.get_user(db_engine, uid)
        private = svc.get_user(db_engine, uid, private=True)
        assert "email" not in public
        assert private["email"] == "ada@example.com"
        assert private["preferences"] == {}

    def test_lookup_by_username(self, db_engine):
        uid = make_user(db_engine, "ada")
        assert svc.get_user_by_username(db_engine, "ada")["id"] == uid
        with pytest.raises(NotFoundError):
            svc.get_user_by_username(db_engine, "nobody")

    def test_update_ignores_none_and_unknown_keys(self, db_engine):
        uid = make_user(db_engine, "ada", bio="old bio")
        data = svc.update_profile(
            db_engine, uid, bio=None, location="London", email="hijack@example.com"
        )
        assert data["bio"] == "old bio"
        assert data["location"] == "London"
        assert data["email"] == "ada@example.com"

    def test_rename_conflict_is_case_insensitive(self, db_engine):
        uid = make_user(db_engine, "ada")
        make_user(db_engine, "grace")
        with pytest.raises(ConflictError):
            svc.update_profile(db_engine, uid, username="Grace")
        assert svc.update_profile(db_engine, uid, username="lovelace")["username"] == "lovelace"

    def test_missing_user(self, db_engine):
        with pytest.raises(NotFoundError):
            svc.update_profile(db_engine, 404, bio="x")


class TestSearch:
    def test_substring_match_sorted(self, db_engine):
        for name in ("pythonista", "anna", "py_dev"):
            make_user(db_engine, name)
        assert [u["username"] for u in svc.search_users(db_engine, "PY")] == [
            "py_dev", "pythonista",
        ]

    def test_limit(self, db_engine):
        for i in range(3):
            make_user(db_engine, f"user{i}")
        assert len(svc.search_users(db_engine, "user", limit=2)) == 2


class TestPresenceMirror:
    def test_online_flag_and_status(self, db_engine):
        uid = make_user(db_engine, "ada")
        svc.set_online(db_engine, uid, True)
        status = svc.set_custom_status(db_engine, uid, "Coding")
        assert status["is_online"] is True
        assert status["custom_status"] == "Coding"
        svc.set_online(db_engine, uid, False)
        assert svc.get_user(db_engine, uid)["status"]["is_online"] is False

    def test_clear_status(self, db_engine):
        uid = make_user(db_engine, "ada", custom_status="Busy")
        assert svc.set_custom_status(db_engine, uid, None)["custom_status"] is None
