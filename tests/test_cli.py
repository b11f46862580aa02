"""
tests/test_cli.py -- Operator command line (main.py).

Commands are called directly with the test store; main() is only used for
argument parsing checks that exit before a store is opened.
"""

from __future__ import annotations

import argparse
from unittest.mock import patch

import pytest

import main
from auth import audit
from auth.models import ROLE_ADMIN, ROLE_MANAGER
from auth.passwords import verify_password
from tests.conftest import make_account


def _args(**kwargs) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


class TestCreateAdmin:
    def test_creates_admin(self, store, capsys) -> None:
        with patch("main.getpass.getpass", side_effect=["bootstrap-pass", "bootstrap-pass"]):
            rc = main.cmd_create_admin(store, _args(email="Boss@Example.com", first_name="Ada", last_name=None))
        assert rc == 0
        account = store.get_account_by_email("boss@example.com")
        assert verify_password("bootstrap-pass", account.password_hash)
        assert store.get_crm_profile(account.id).role == ROLE_ADMIN
        assert store.list_audit_events(limit=1)[0].action == audit.REGISTER
        assert "Admin account created" in capsys.readouterr().out

    def test_password_mismatch(self, store) -> None:
        with patch("main.getpass.getpass", side_effect=["bootstrap-pass", "other-pass"]):
            assert main.cmd_create_admin(store, _args(email="boss@example.com", first_name=None, last_name=None)) == 1
        assert store.get_account_by_email("boss@example.com") is None

    def test_weak_password_reported(self, store, capsys) -> None:
        with patch("main.getpass.getpass", side_effect=["short", "short"]):
            assert main.cmd_create_admin(store, _args(email="boss@example.com", first_name=None, last_name=None)) == 1
        assert "at least 8" in capsys.readouterr().out


class TestAccountCommands:
    def test_set_role(self, store) -> None:
        account = make_account(store, "rep@example.com")
        assert main.cmd_set_role(store, _args(email="rep@example.com", role=ROLE_MANAGER)) == 0
        assert store.get_crm_profile(account.id).role == ROLE_MANAGER

    def test_unknown_email(self, store, capsys) -> None:
        assert main.cmd_disable(store, _args(email="ghost@example.com")) == 1
        assert "No account" in capsys.readouterr().out

    def test_disable_and_enable(self, store) -> None:
        account = make_account(store, "rep@example.com")
        assert main.cmd_disable(store, _args(email="rep@example.com")) == 0
        assert store.get_account(account.id).disabled is True
        assert main.cmd_enable(store, _args(email="rep@example.com")) == 0
        assert store.get_account(account.id).disabled is False

    def test_audit_listing(self, store, capsys) -> None:
        make_account(store, "rep@example.com")
        main.cmd_disable(store, _args(email="rep@example.com"))
        assert main.cmd_audit(store, _args(limit=10, email="rep@example.com")) == 0
        assert audit.ACCOUNT_DISABLED in capsys.readouterr().out


def test_invalid_role_rejected_by_parser() -> None:
    with pytest.raises(SystemExit):
        main.main(["set-role", "rep@example.com", "owner"])
