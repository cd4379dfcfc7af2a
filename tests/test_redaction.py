"""
Tests for PII redaction.
"""

from medreport_backend.redaction import REDACTED, redact


class TestRedact:
    """Tests for redact()."""

    def test_email(self):
        assert redact("Contact: john.doe@example.com today") == f"Contact: {REDACTED} today"

    def test_phone_numbers(self):
        assert redact("Call +1 555 123 4567 now") == f"Call {REDACTED} now"
        assert redact("Tel 555-123-4567") == f"Tel {REDACTED}"

    def test_labelled_name_keeps_label(self):
        text = "Patient Name: John Doe\nGlucose: 95 mg/dL"
        assert redact(text) == f"Patient Name: {REDACTED}\nGlucose: 95 mg/dL"

    def test_short_name_label(self):
        assert redact("name - Jane O'Neil") == f"name: {REDACTED}"

    def test_lab_values_untouched(self):
        text = "Glucose 95 mg/dL (Normal)\nCholesterol 210 mg/dL (High)"
        assert redact(text) == text

    def test_all_matches_replaced(self):
        text = "a@b.io and c@d.org"
        assert redact(text) == f"{REDACTED} and {REDACTED}"

    def test_idempotent(self):
        text = "Patient: John Doe, john@example.com, +44 20 7946 0958"
        once = redact(text)
        assert redact(once) == once
        assert "John" not in once
        assert "john@example.com" not in once

    def test_non_string_input(self):
        assert redact(None) == ""
        assert redact(42) == "42"
        assert redact("") == ""

    def test_digits_glued_to_name_are_masked(self):
        once = redact("Name: Jo5551234567")

        assert once == f"Name: {REDACTED}{REDACTED}"
        assert "5551234567" not in once
        assert redact(once) == once
