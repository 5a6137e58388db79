"""Tests for the command line."""

import pytest
from typer.testing import CliRunner

from image_dispatcher import cli
from image_dispatcher.models import BuildRequest

runner = CliRunner()


@pytest.fixture
def cli_dispatcher(dispatcher, monkeypatch):
    monkeypatch.setattr(cli, "Dispatcher", lambda: dispatcher)
    return dispatcher


class TestSubmit:
    def test_success_prints_reference(self, cli_dispatcher):
        result = runner.invoke(cli.app, ["submit", "octo/app", "--branch", "main", "--platform", "linux/amd64"])

        assert result.exit_code == 0, result.output
        assert "ghcr.io/octo/app:latest" in result.output

    def test_checkout_failure_exit_code(self, cli_dispatcher):
        result = runner.invoke(cli.app, ["submit", "octo/app", "--branch", "gone"])

        assert result.exit_code == cli.EXIT_CODES[cli.FailureKind.checkout]
        assert "checkout" in result.output

    def test_build_failure_exit_code(self, cli_dispatcher, fake_github):
        fake_github.fail_step("Build and push Docker image", "failed to solve")

        result = runner.invoke(cli.app, ["submit", "octo/app"])

        assert result.exit_code == cli.EXIT_CODES[cli.FailureKind.build]

    def test_unreachable_registry_exit_code(self, cli_dispatcher, fake_registry):
        fake_registry.unreachable = True

        result = runner.invoke(cli.app, ["submit", "octo/app"])

        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert result.exit_code == cli.EXIT_CODES[cli.FailureKind.registry_push]

    def test_invalid_repository(self, cli_dispatcher):
        result = runner.invoke(cli.app, ["submit", "octo"])

        assert result.exit_code == 2


class TestInspection:
    def test_list_and_status(self, cli_dispatcher):
        submitted = cli_dispatcher.submit(BuildRequest(repository="octo/app", branch="main", platforms=["linux/amd64"]))

        listing = runner.invoke(cli.app, ["list"])
        status = runner.invoke(cli.app, ["status", str(submitted.dispatch_id)])

        assert listing.exit_code == 0
        assert "octo/app@main" in listing.output
        assert status.exit_code == 0
        assert "Published" in status.output

    def test_status_unknown(self, cli_dispatcher):
        result = runner.invoke(cli.app, ["status", "999"])

        assert result.exit_code == 1

    def test_log(self, cli_dispatcher):
        submitted = cli_dispatcher.submit(BuildRequest(repository="octo/app", branch="main", platforms=["linux/amd64"]))

        result = runner.invoke(cli.app, ["log", str(submitted.dispatch_id)])

        assert result.exit_code == 0
        assert "git ls-remote" in result.output


class TestMakePublic:
    def test_private_package_exit_code(self, cli_dispatcher, fake_github):
        fake_github.packages[("users", "octo", "app")] = {"visibility": "private", "owner": {"type": "User"}}

        result = runner.invoke(cli.app, ["make-public", "ghcr.io/octo/app:latest"])

        assert result.exit_code == cli.EXIT_CODES[cli.FailureKind.dispatch]
        assert "settings" in result.output

    def test_public_package(self, cli_dispatcher, fake_registry):
        fake_registry.public.add("octo/app")

        result = runner.invoke(cli.app, ["make-public", "ghcr.io/octo/app:latest"])

        assert result.exit_code == 0


class TestRefs:
    def test_lists_branches(self, monkeypatch):
        monkeypatch.setattr(cli, "list_remote_refs", lambda url, token, ref_type: ["develop", "main"])

        result = runner.invoke(cli.app, ["refs", "octo/app"])

        assert result.exit_code == 0
        assert result.output.split() == ["develop", "main"]

    def test_unreachable_repository(self, monkeypatch):
        def boom(url, token, ref_type):
            raise cli.GitError("not found")

        monkeypatch.setattr(cli, "list_remote_refs", boom)

        result = runner.invoke(cli.app, ["refs", "octo/missing"])

        assert result.exit_code == cli.EXIT_CODES[cli.FailureKind.checkout]
