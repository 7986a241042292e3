"""Tests for email parsing: HTML, signatures, ICS invites, subject intent and spam."""
import base64
from datetime import date, datetime, timezone

import pytest

from orchestrator.agent.email_parser import (
    MAX_CONTENT_LENGTH,
    TRUNCATION_MARKER,
    cap_content,
    clean_email_content,
    detect_email_priority,
    extract_domain,
    extract_email_address,
    extract_email_intent,
    is_spam,
    parse_ics_attachment,
    parse_ics_date,
    strip_email_signature,
    strip_html_tags,
)

INVITE = "\r\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "METHOD:REQUEST",
    "BEGIN:VEVENT",
    "UID:evt-42@example.com",
    "SUMMARY:Quarterly review\\, part 2",
    "DESCRIPTION:Agenda:\\nBudget and",
    "  hiring",
    "DTSTART:20260315T140000Z",
    "DTEND:20260315T150000Z",
    "LOCATION:Room 4",
    "ORGANIZER;CN=Dana:mailto:Dana@Example.com",
    "ATTENDEE;CN=Lee;RSVP=TRUE:MAILTO:Lee@Example.com",
    "ATTENDEE:mailto:sam@example.com",
    "STATUS:confirmed",
    "SEQUENCE:2",
    "END:VEVENT",
    "END:VCALENDAR",
])


class TestStripHtml:
    """Test HTML to text conversion."""

    def test_block_elements_become_newlines(self):
        text = strip_html_tags("<p>Hello</p><p>Can we <b>meet</b>?<br>Thanks</p>")
        assert text == "Hello\n\nCan we meet?\nThanks"

    def test_entities_decoded(self):
        assert strip_html_tags("<div>Tom &amp; Jerry&nbsp;&lt;3</div>") == "Tom & Jerry <3"

    def test_empty(self):
        assert strip_html_tags(None) == ""


class TestStripSignature:
    """Test signature and reply-quote removal."""

    def test_trailing_signature_removed(self):
        body = "Hi team,\nCan we move the call to Friday?\nIt clashes with a launch.\n\nBest regards,\nDana\nCEO"
        assert strip_email_signature(body) == "Hi team,\nCan we move the call to Friday?\nIt clashes with a launch."

    def test_reply_quote_removed(self):
        body = "Sounds good.\nSee you then.\nOne more thing.\nOn Mon, Mar 2, 2026 at 9:00 AM Lee wrote:\n> earlier text"
        assert strip_email_signature(body) == "Sounds good.\nSee you then.\nOne more thing."

    def test_early_match_ignored(self):
        """A pattern in the first 30% of the body is content, not a signature."""
        body = "Thanks,\nfor the update. Can we talk tomorrow?\nI have questions\nabout pricing\nand terms"
        assert strip_email_signature(body) == body

    def test_sent_from_device(self):
        body = "Running late.\nStart without me.\nWill join at 10.\nSent from my iPhone"
        assert strip_email_signature(body).endswith("Will join at 10.")


class TestCleanContent:
    """Test full body cleanup."""

    def test_html_used_when_no_text(self):
        assert clean_email_content(None, "<p>Please call me</p>") == "Please call me"

    def test_text_preferred_over_html(self):
        assert clean_email_content("Plain body", "<p>HTML body</p>") == "Plain body"

    def test_whitespace_collapsed(self):
        assert clean_email_content("a\t\tb   c\n\n\n\nd", None) == "a b c\n\nd"

    def test_capped(self):
        content = clean_email_content("x" * (MAX_CONTENT_LENGTH + 5), None)
        assert content.endswith(TRUNCATION_MARKER)
        assert len(content) == MAX_CONTENT_LENGTH + len(TRUNCATION_MARKER)

    def test_cap_content_short_text_untouched(self):
        assert cap_content("short") == "short"


class TestParseIcs:
    """Test calendar attachment extraction."""

    def test_plain_invite(self):
        event = parse_ics_attachment(INVITE)
        assert event.uid == "evt-42@example.com"
        assert event.summary == "Quarterly review, part 2"
        assert event.description == "Agenda:\nBudget and hiring"
        assert event.dtstart == datetime(2026, 3, 15, 14, 0, tzinfo=timezone.utc)
        assert event.dtend == datetime(2026, 3, 15, 15, 0, tzinfo=timezone.utc)
        assert event.location == "Room 4"
        assert event.organizer == "dana@example.com"
        assert event.attendees == ["lee@example.com", "sam@example.com"]
        assert event.status == "CONFIRMED"
        assert event.sequence == 2
        assert event.method == "REQUEST"

    def test_base64_invite(self):
        encoded = base64.b64encode(INVITE.encode("utf-8")).decode("ascii")
        event = parse_ics_attachment(encoded)
        assert event.uid == "evt-42@example.com"
        assert event.attendees == ["lee@example.com", "sam@example.com"]

    def test_all_day_event(self):
        ics = "BEGIN:VEVENT\nUID:1\nDTSTART;VALUE=DATE:20260401\nDTEND;VALUE=DATE:20260402\nEND:VEVENT"
        event = parse_ics_attachment(ics)
        assert event.dtstart == date(2026, 4, 1)
        assert event.dtend == date(2026, 4, 2)

    def test_floating_time(self):
        assert parse_ics_date("20260315T140000") == datetime(2026, 3, 15, 14, 0)

    def test_to_dict_serializes_dates(self):
        data = parse_ics_attachment(INVITE).to_dict()
        assert data["dtstart"] == "2026-03-15T14:00:00+00:00"

    @pytest.mark.parametrize("content", [None, "", "just some text", "BEGIN:VCALENDAR\nEND:VCALENDAR"])
    def test_not_a_calendar(self, content):
        assert parse_ics_attachment(content) is None


class TestSubjectIntent:
    """Test subject-line intent buckets."""

    def test_scheduling_subject(self):
        intent = extract_email_intent("Book a call")
        assert intent.intent == "SCHEDULE_MEETING"
        assert intent.priority == 3
        assert intent.confidence == pytest.approx(0.8)

    def test_urgent_subject(self):
        intent = extract_email_intent("URGENT: server down")
        assert intent.intent == "URGENT"
        assert intent.priority == 5

    def test_urgency_boosts_other_bucket(self):
        """An urgency word raises the winning bucket's priority by one."""
        intent = extract_email_intent("Please reschedule, postpone, pick another time - asap")
        assert intent.intent == "RESCHEDULE_MEETING"
        assert intent.priority == 5

    def test_reply_prefix_falls_back_to_follow_up(self):
        intent = extract_email_intent("Re: Q3 numbers")
        assert intent.intent == "FOLLOW_UP"
        assert intent.confidence == 0.5

    def test_reply_prefix_does_not_override_stronger_match(self):
        assert extract_email_intent("Re: cancel our appointment").intent == "CANCEL_MEETING"

    def test_empty_subject(self):
        assert extract_email_intent("").intent == "UNKNOWN"


class TestEmailPriority:
    """Test priority from headers, subject and body."""

    def test_high_importance_header(self):
        assert detect_email_priority("Hello", "See attached", {"Importance": "High"}) == 5

    def test_low_priority_header(self):
        assert detect_email_priority("Hello", "See attached", {"X-Priority": "5 (Lowest)"}) == 1

    def test_body_keyword_raises_priority(self):
        assert detect_email_priority("Hello", "This is blocking our launch", {}) == 4

    def test_default(self):
        assert detect_email_priority("Hello", "See attached") == 3


class TestAddresses:
    """Test sender address handling."""

    def test_named_address(self):
        assert extract_email_address("Dana Smith <Dana@Example.COM>") == "dana@example.com"

    def test_bare_address(self):
        assert extract_email_address("lee@example.com") == "lee@example.com"

    def test_no_address(self):
        assert extract_email_address("Dana Smith") is None

    def test_domain(self):
        assert extract_domain("Dana <dana@acme.com>") == "acme.com"


class TestSpam:
    """Test the spam screen."""

    def test_suspicious_domain(self):
        assert is_spam("Hello there, quick question", "mailinator.com") is True

    def test_spam_phrase(self):
        assert is_spam("Congratulations, you are our lucky winner!", "example.com") is True

    def test_too_short(self):
        assert is_spam("hi", "example.com") is True

    def test_ordinary_mail(self):
        assert is_spam("Can we meet on Thursday?", "example.com") is False
