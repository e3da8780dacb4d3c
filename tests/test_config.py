import unittest
from pathlib import Path

from pydantic import ValidationError

from repo_reconciler.config import Settings


class TestSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = Settings.from_env({})

        self.assertIsNone(settings.token_value())
        self.assertEqual(settings.api_url, "https://api.github.com")
        self.assertEqual(settings.descriptor_path, Path("package.json"))
        self.assertGreater(settings.grace_period, 0)

    def test_reads_environment(self) -> None:
        settings = Settings.from_env({
            "GITHUB_TOKEN": "secret",
            "GITHUB_API_URL": "https://ghe.example.com/api/v3",
            "RECONCILER_DESCRIPTOR": "server.json",
            "RECONCILER_GRACE_PERIOD": "2.5",
            "RECONCILER_MAX_WORKERS": "2",
            "RECONCILER_TIMEOUT": "30",
        })

        self.assertEqual(settings.token_value(), "secret")
        self.assertEqual(settings.api_url, "https://ghe.example.com/api/v3")
        self.assertEqual(settings.descriptor_path, Path("server.json"))
        self.assertEqual(settings.grace_period, 2.5)
        self.assertEqual(settings.max_workers, 2)
        self.assertEqual(settings.timeout, 30.0)

    def test_gh_token_fallback(self) -> None:
        self.assertEqual(Settings.from_env({"GH_TOKEN": "from-gh"}).token_value(), "from-gh")
        self.assertEqual(
            Settings.from_env({"GH_TOKEN": "from-gh", "GITHUB_TOKEN": "preferred"}).token_value(),
            "preferred",
        )

    def test_overrides_win_and_none_falls_through(self) -> None:
        settings = Settings.from_env(
            {"RECONCILER_GRACE_PERIOD": "9", "RECONCILER_MAX_WORKERS": "4"},
            grace_period=1.0,
            max_workers=None,
        )

        self.assertEqual(settings.grace_period, 1.0)
        self.assertEqual(settings.max_workers, 4)

    def test_token_is_not_shown_in_repr(self) -> None:
        self.assertNotIn("secret", repr(Settings.from_env({"GITHUB_TOKEN": "secret"})))

    def test_invalid_values_raise(self) -> None:
        for overrides in ({"grace_period": -1}, {"max_workers": 0}, {"timeout": 0}):
            with self.subTest(**overrides):
                with self.assertRaises(ValidationError):
                    Settings.from_env({}, **overrides)
