import unittest

from repo_reconciler.application.report import render_text
from repo_reconciler.domain.models import (
    ApplyReport,
    DiffResult,
    FieldDiff,
    FieldOutcome,
    FieldStatus,
    ReconcileResult,
    VerifyReport,
)

DIFF = DiffResult(entries={
    "description": FieldDiff(field="description", canonical="New", remote=None),
    "topics": FieldDiff(
        field="topics", canonical=frozenset({"b", "c"}), remote=frozenset({"a", "b"}), missing=frozenset({"c"})
    ),
})


class TestRenderText(unittest.TestCase):
    def test_dry_run_shows_differences_only(self) -> None:
        text = render_text(ReconcileResult(identifier="octo/tool", dry_run=True, diff=DIFF))

        self.assertIn("Repository octo/tool (dry run, nothing applied)", text)
        self.assertIn("description: (unset) -> 'New'", text)
        self.assertIn("topics: missing [c] (remote has [a, b])", text)
        self.assertNotIn("Apply:", text)
        self.assertNotIn("Result:", text)

    def test_per_field_breakdown(self) -> None:
        result = ReconcileResult(
            identifier="octo/tool",
            diff=DIFF,
            apply_report=ApplyReport(outcomes={
                "description": FieldOutcome(
                    field="description", status=FieldStatus.FAILED, reason="RemoteRejected: too long"
                ),
                "homepage_url": FieldOutcome(field="homepage_url", status=FieldStatus.SKIPPED, reason="unchanged"),
                "topics": FieldOutcome(field="topics", status=FieldStatus.APPLIED),
            }),
            verify_report=VerifyReport(
                outcomes={"topics": FieldOutcome(field="topics", status=FieldStatus.CONVERGED)},
                attempts=2,
            ),
        )

        text = render_text(result)

        self.assertIn("  description: failed (RemoteRejected: too long)", text)
        self.assertIn("  homepage_url: skipped (unchanged)", text)
        self.assertIn("  topics: applied", text)
        self.assertIn("Verify (2 attempt(s)):", text)
        self.assertIn("  topics: converged", text)
        self.assertTrue(text.endswith("Result: needs manual follow-up"))

    def test_in_sync(self) -> None:
        result = ReconcileResult(identifier="octo/tool", diff=DiffResult(), apply_report=ApplyReport())

        text = render_text(result)

        self.assertIn("No differences.", text)
        self.assertTrue(text.endswith("Result: ok"))


class TestResultJson(unittest.TestCase):
    def test_topics_serialize_sorted(self) -> None:
        data = ReconcileResult(identifier="octo/tool", dry_run=True, diff=DIFF).model_dump(mode="json")

        self.assertEqual(data["diff"]["entries"]["topics"]["missing"], ["c"])
        self.assertEqual(data["diff"]["entries"]["topics"]["remote"], ["a", "b"])
