import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import FakePlatform, remote_state, write_descriptor

from repo_reconciler.domain.exceptions import RemoteNotFound, RemoteRejected, RemoteUnauthorized
from repo_reconciler.main import EXIT_FATAL, EXIT_OK, EXIT_PARTIAL, build_parser, main


class _FakeClientFactory:
    """Stands in for GitHubRestClient: `async with GitHubRestClient(...)` yields the fake platform."""

    def __init__(self, platform: FakePlatform) -> None:
        self.platform = platform
        self.kwargs = None

    def __call__(self, **kwargs):
        self.kwargs = kwargs
        return self

    async def __aenter__(self) -> FakePlatform:
        return self.platform

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class TestParser(unittest.TestCase):
    def test_reconcile_flags(self) -> None:
        args = build_parser().parse_args(
            ["reconcile", "--dry-run", "--grace-period", "5", "--identifier", "octo/tool"]
        )

        self.assertTrue(args.dry_run)
        self.assertEqual(args.grace_period, 5.0)
        self.assertEqual(args.identifier, "octo/tool")

    def test_command_is_required(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit) as ctx:
            build_parser().parse_args([])
        self.assertEqual(ctx.exception.code, 2)

    def test_identifier_must_be_owner_repo(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["reconcile", "--identifier", "not-a-repo"])


class TestMain(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.descriptor = write_descriptor(self.tmp)
        patcher = patch("repo_reconciler.main.load_dotenv")
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, platform: FakePlatform, *extra: str, env=None):
        factory = _FakeClientFactory(platform)
        argv = ["reconcile", "--descriptor", str(self.descriptor), "--grace-period", "0", *extra]
        stdout = io.StringIO()
        with patch.dict(os.environ, env if env is not None else {"GITHUB_TOKEN": "test-token"}, clear=True), \
                patch("repo_reconciler.main.GitHubRestClient", factory), \
                contextlib.redirect_stdout(stdout):
            code = main(argv)
        return code, stdout.getvalue(), factory

    def test_successful_run_exits_zero(self) -> None:
        platform = FakePlatform(remote_state())

        code, output, factory = self._run(platform)

        self.assertEqual(code, EXIT_OK)
        self.assertIn("topics: applied", output)
        self.assertEqual(factory.kwargs["token"], "test-token")
        self.assertEqual(platform.state.description, "A tool that does things")

    def test_partial_failure_exits_one(self) -> None:
        platform = FakePlatform(remote_state(), failures={"description": RemoteRejected(422, "nope")})

        code, output, _ = self._run(platform)

        self.assertEqual(code, EXIT_PARTIAL)
        self.assertIn("homepage_url: applied", output)
        self.assertIn("description: failed", output)

    def test_dry_run_writes_nothing_and_works_without_token(self) -> None:
        platform = FakePlatform(remote_state())

        code, output, factory = self._run(platform, "--dry-run", env={})

        self.assertEqual(code, EXIT_OK)
        self.assertEqual(platform.write_calls, [])
        self.assertIsNone(factory.kwargs["token"])
        self.assertIn("dry run", output)

    def test_missing_token_is_fatal(self) -> None:
        platform = FakePlatform(remote_state())

        code, _, _ = self._run(platform, env={})

        self.assertEqual(code, EXIT_FATAL)
        self.assertEqual(platform.fetch_calls, 0)

    def test_malformed_descriptor_is_fatal_before_network(self) -> None:
        self.descriptor = write_descriptor(self.tmp, repository=None)
        platform = FakePlatform(remote_state())

        code, _, _ = self._run(platform)

        self.assertEqual(code, EXIT_FATAL)
        self.assertEqual(platform.fetch_calls, 0)

    def test_unknown_repository_is_fatal(self) -> None:
        class _MissingPlatform(FakePlatform):
            async def fetch_metadata(self, identifier):
                raise RemoteNotFound(identifier)

        code, _, _ = self._run(_MissingPlatform(remote_state()))

        self.assertEqual(code, EXIT_FATAL)

    def test_invalid_configuration_is_fatal(self) -> None:
        code, _, _ = self._run(FakePlatform(remote_state()), env={"GITHUB_TOKEN": "t", "RECONCILER_MAX_WORKERS": "0"})

        self.assertEqual(code, EXIT_FATAL)

    def test_json_output(self) -> None:
        code, output, _ = self._run(FakePlatform(remote_state()), "--dry-run", "--json")

        data = json.loads(output)
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(data["identifier"], "octo/tool")
        self.assertEqual(data["diff"]["entries"]["topics"]["missing"], ["c"])

    def test_verify_failure_after_writes_still_prints_breakdown(self) -> None:
        class _RevokedAfterWritePlatform(FakePlatform):
            async def fetch_metadata(self, identifier):
                if self.write_calls:
                    raise RemoteUnauthorized("token revoked")
                return await super().fetch_metadata(identifier)

        platform = _RevokedAfterWritePlatform(remote_state())

        code, output, _ = self._run(platform)

        self.assertEqual(code, EXIT_PARTIAL)
        self.assertEqual(len(platform.write_calls), 3)
        self.assertIn("description: applied", output)
        self.assertIn("description: diverging (RemoteUnauthorized: token revoked)", output)

    def test_rejected_initial_fetch_is_fatal(self) -> None:
        class _BlockedPlatform(FakePlatform):
            async def fetch_metadata(self, identifier):
                raise RemoteRejected(451, "Repository access blocked")

        code, output, _ = self._run(_BlockedPlatform(remote_state()))

        self.assertEqual(code, EXIT_FATAL)
        self.assertEqual(output, "")
