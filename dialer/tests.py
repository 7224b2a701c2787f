"""
Unit tests for the dialer app (VICIdial mirror)

Tests cover:
- Response parsing helpers
- Lead index in Redis
- add_lead / update_lead push logic
- Lead search and release on unassignment
- HTTP client error handling
- Celery sync tasks
"""

import pytest
import orjson as json
import requests
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from django.utils import timezone

from assignments.models import Agent, Lead, LeadAssignment
from dialer.tasks import release_assignment_from_vicidial, sync_assignment_to_vicidial
from dialer.utils import (
    build_lead_details_url,
    find_vicidial_lead_ids,
    get_agent_target,
    get_lead_index_entry,
    is_error,
    normalize_us_phone,
    parse_add_lead_id,
    parse_lead_ids,
    push_lead,
    release_lead,
    split_name,
    upsert_lead_index,
)
from retention_desk.redis import VICIDIAL_LEAD_INDEX_REDIS_KEY
from retention_desk.vicidial import VicidialManager, VicidialResult, parse_vicidial_response


def result(raw, ok=True, status=200):
    return VicidialResult(ok=ok, status=status, raw=raw, parsed=parse_vicidial_response(raw))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def mock_conn():
    """Mock Redis connection"""
    with patch('dialer.utils.conn') as mock:
        mock.hget.return_value = None
        yield mock


@pytest.fixture
def mock_vicidial():
    """Mock VICIdial manager"""
    with patch('dialer.utils.vicidial_manager') as mock:
        yield mock


@pytest.fixture
def vicidial_settings(settings):
    settings.VICIDIAL_BASE_URL = "https://dialer.example.com/vicidial/"
    settings.VICIDIAL_API_USER = "apiuser"
    settings.VICIDIAL_API_PASS = "secret"
    settings.VICIDIAL_API_SOURCE = "retention_portal"
    settings.VICIDIAL_DEFAULT_CAMPAIGN_ID = "RETAIN"
    settings.VICIDIAL_DEFAULT_LIST_ID = "1000"
    settings.VICIDIAL_DEFAULT_PHONE_CODE = "1"
    settings.VICIDIAL_UNASSIGN_STATUS = "ERI"
    settings.RETENTION_PORTAL_BASE_URL = "https://portal.example.com/"
    return settings


@pytest.fixture
def fake_assignment():
    agent = SimpleNamespace(id=7, vicidial_user="agent7", vicidial_campaign_id="", vicidial_list_id="2001")
    lead = SimpleNamespace(deal_id="1020", phone_number="+1 (555) 123-4567", customer_name="Jane  Q  Public")
    return SimpleNamespace(assignment_id="a-1", lead=lead, assignee=agent)


# ============================================================================
# TEST: parsing helpers
# ============================================================================

class TestParsing:

    @pytest.mark.parametrize("raw, expected", [
        ("+1 (555) 123-4567", "5551234567"),
        ("555.123.4567", "5551234567"),
        ("25551234567", "25551234567"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize_us_phone(self, raw, expected):
        assert normalize_us_phone(raw) == expected

    def test_split_name_explicit_parts_win(self):
        assert split_name("Ignored Name", "Jane", "") == ("Jane", "")

    def test_split_name_from_full_name(self):
        assert split_name("  Jane   Q  Public ") == ("Jane", "Q Public")

    def test_split_name_single_word(self):
        assert split_name("Cher") == ("Cher", "Contact")

    def test_split_name_empty(self):
        assert split_name(None) == ("Unknown", "Contact")

    def test_parse_add_lead_id(self):
        raw = "SUCCESS: add_lead LEAD HAS BEEN ADDED - 5551234567|1000|98765|-4|apiuser\n"

        assert parse_add_lead_id(raw) == 98765

    def test_parse_add_lead_id_error(self):
        assert parse_add_lead_id("ERROR: add_lead INVALID PHONE NUMBER LENGTH - 555|apiuser") is None

    def test_parse_lead_ids(self):
        raw = (
            "ERROR: something - 111|222\n"
            "1000|98765|5551234567|NEW\n"
            "1000|98766|5551234567|ERI\n"
            "1000|98765|5551234567|NEW\n"
        )

        assert parse_lead_ids(raw) == [1000, 98765, 98766]

    def test_parse_ignores_non_ascii_digits(self):
        assert parse_lead_ids("1000|²|98765") == [1000, 98765]
        assert parse_add_lead_id("SUCCESS: add_lead LEAD HAS BEEN ADDED - 5551234567|1000|²|-4|apiuser") is None

    def test_parse_vicidial_response(self):
        parsed = parse_vicidial_response("SUCCESS: update_lead LEAD HAS BEEN UPDATED\nnot a pair\n: empty key\n")

        assert parsed == {"SUCCESS": "update_lead LEAD HAS BEEN UPDATED"}

    def test_is_error(self):
        assert is_error(None) is True
        assert is_error(result("ERROR: add_lead NO FUNCTION SPECIFIED")) is True
        assert is_error(result("NOTICE: this has an ERROR inside")) is True
        assert is_error(result("SUCCESS: update_lead LEAD HAS BEEN UPDATED")) is False

    def test_build_lead_details_url(self, vicidial_settings):
        assert build_lead_details_url("1020") == "https://portal.example.com/agent/assigned-lead-details?dealId=1020"
        assert build_lead_details_url(None) is None

    def test_agent_target_falls_back_to_defaults(self, vicidial_settings):
        agent = SimpleNamespace(vicidial_campaign_id="", vicidial_list_id="2001")

        assert get_agent_target(agent) == ("RETAIN", "2001")


# ============================================================================
# TEST: lead index
# ============================================================================

class TestLeadIndex:

    def test_get_missing_entry(self, mock_conn):
        assert get_lead_index_entry("1020", "5551234567", "1000", 7) is None

    def test_upsert_and_read_key(self, mock_conn):
        entry = upsert_lead_index("1020", "1-555-123-4567", "1000", 7, 98765, assignment_id="a-1")

        assert entry["phone_number"] == "5551234567"
        assert entry["vicidial_lead_id"] == 98765
        key, field, value = mock_conn.hset.call_args[0]
        assert key == VICIDIAL_LEAD_INDEX_REDIS_KEY
        assert field == "1020|5551234567|1000|7"
        assert json.loads(value)["assignment_id"] == "a-1"

    def test_get_entry_decodes(self, mock_conn):
        mock_conn.hget.return_value = json.dumps({"vicidial_lead_id": 98765})

        assert get_lead_index_entry("1020", "5551234567", "1000", 7) == {"vicidial_lead_id": 98765}
        mock_conn.hget.assert_called_once_with(VICIDIAL_LEAD_INDEX_REDIS_KEY, "1020|5551234567|1000|7")

    def test_get_corrupt_entry(self, mock_conn):
        mock_conn.hget.return_value = "{not json"

        with patch('dialer.utils.logger') as mock_logger:
            assert get_lead_index_entry("1020", "5551234567", "1000", 7) is None
            mock_logger.error.assert_called_once()


# ============================================================================
# TEST: push_lead
# ============================================================================

class TestPushLead:

    def test_add_lead(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        mock_vicidial.api.return_value = result(
            "SUCCESS: add_lead LEAD HAS BEEN ADDED - 5551234567|2001|98765|-4|apiuser"
        )

        outcome = push_lead(fake_assignment)

        assert outcome["ok"] is True
        assert outcome["function"] == "add_lead"
        assert outcome["lead_id"] == 98765
        function, params = mock_vicidial.api.call_args[0]
        assert function == "add_lead"
        assert params["phone_number"] == "5551234567"
        assert params["first_name"] == "Jane"
        assert params["last_name"] == "Q Public"
        assert params["campaign_id"] == "RETAIN"
        assert params["list_id"] == "2001"
        assert params["vendor_lead_code"] == "1020"
        assert params["source_id"] == "agent7"
        assert "dealId=1020" in params["comments"]
        mock_conn.hset.assert_called_once()

    def test_reuses_indexed_lead(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        mock_conn.hget.return_value = json.dumps({"vicidial_lead_id": 555})
        mock_vicidial.api.return_value = result("SUCCESS: update_lead LEAD HAS BEEN UPDATED - apiuser|555")

        outcome = push_lead(fake_assignment)

        assert outcome == {
            "ok": True,
            "function": "update_lead",
            "lead_id": 555,
            "raw": "SUCCESS: update_lead LEAD HAS BEEN UPDATED - apiuser|555",
        }
        mock_vicidial.api.assert_called_once()
        assert mock_vicidial.api.call_args[0][0] == "update_lead"

    def test_falls_back_to_add_when_update_fails(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        mock_conn.hget.return_value = json.dumps({"vicidial_lead_id": 555})
        mock_vicidial.api.side_effect = [
            result("ERROR: update_lead NO MATCHES FOUND IN THE SYSTEM"),
            result("SUCCESS: add_lead LEAD HAS BEEN ADDED - 5551234567|2001|98765|-4|apiuser"),
        ]

        outcome = push_lead(fake_assignment)

        assert outcome["function"] == "add_lead"
        assert outcome["lead_id"] == 98765

    def test_add_lead_error(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        mock_vicidial.api.return_value = result("ERROR: add_lead USER DOES NOT HAVE PERMISSION")

        outcome = push_lead(fake_assignment)

        assert outcome["ok"] is False
        mock_conn.hset.assert_not_called()

    def test_add_lead_without_lead_id_is_a_failed_sync(self, mock_conn, mock_vicidial, vicidial_settings,
                                                       fake_assignment):
        mock_vicidial.api.return_value = result("SUCCESS: add_lead LEAD HAS BEEN ADDED")

        with patch('dialer.utils.logger') as mock_logger:
            outcome = push_lead(fake_assignment)

        assert outcome["ok"] is False
        assert outcome["lead_id"] is None
        mock_logger.warning.assert_called_once()
        mock_conn.hset.assert_not_called()

    def test_unreachable_dialer(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        mock_vicidial.api.return_value = None

        outcome = push_lead(fake_assignment)

        assert outcome["ok"] is False
        assert outcome["raw"] is None

    def test_missing_phone(self, mock_conn, mock_vicidial, vicidial_settings, fake_assignment):
        fake_assignment.lead.phone_number = ""

        outcome = push_lead(fake_assignment)

        assert outcome["ok"] is False
        mock_vicidial.api.assert_not_called()


# ============================================================================
# TEST: find / release
# ============================================================================

class TestReleaseLead:

    def test_find_merges_searches(self, mock_vicidial):
        mock_vicidial.api.side_effect = [
            result("2001|98765|5551234567|NEW"),
            None,
            result("2001|98766|5551234567|NEW\n2001|98765|5551234567|NEW"),
        ]

        lead_ids = find_vicidial_lead_ids("1020", "5551234567", "2001")

        assert lead_ids == [2001, 98765, 98766]
        functions = [c[0][0] for c in mock_vicidial.api.call_args_list]
        assert functions == ["lead_search", "check_phone_number", "lead_search"]

    def test_find_by_deal_only(self, mock_vicidial):
        mock_vicidial.api.return_value = result("ERROR: lead_search NO RESULTS FOUND")

        assert find_vicidial_lead_ids("1020", "") == []
        mock_vicidial.api.assert_called_once()

    def test_release_updates_every_match(self, mock_vicidial, vicidial_settings):
        with patch('dialer.utils.find_vicidial_lead_ids', return_value=[98765, 98766]):
            mock_vicidial.api.side_effect = [
                result("SUCCESS: update_lead LEAD HAS BEEN UPDATED"),
                result("ERROR: update_lead NO MATCHES FOUND"),
            ]

            outcome = release_lead("1020", "1 555 123 4567", "2001")

        assert outcome == {"matched": 2, "updated": 1, "lead_ids": [98765, 98766], "status_set": "ERI"}
        params = mock_vicidial.api.call_args_list[0][0][1]
        assert params["status"] == "ERI"
        assert params["lead_id"] == 98765

    def test_release_requires_identifier(self, mock_vicidial):
        with pytest.raises(ValueError):
            release_lead("", None)


# ============================================================================
# TEST: VicidialManager
# ============================================================================

class TestVicidialManager:

    def test_posts_form_without_none_params(self, vicidial_settings):
        manager = VicidialManager()
        session = MagicMock()
        session.post.return_value = SimpleNamespace(ok=True, status_code=200, text="SUCCESS: version VERSION: 2.14")
        manager._session = session

        outcome = manager.api("version", {"lead_id": 5, "comments": None})

        assert outcome.ok is True
        assert outcome.parsed == {"SUCCESS": "version VERSION: 2.14"}
        url = session.post.call_args[0][0]
        body = session.post.call_args[1]["data"]
        assert url == "https://dialer.example.com/vicidial/non_agent_api.php"
        assert body == {
            "source": "retention_portal",
            "user": "apiuser",
            "pass": "secret",
            "function": "version",
            "lead_id": "5",
        }

    def test_network_error_resets_session(self, vicidial_settings):
        manager = VicidialManager()
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        manager._session = session

        assert manager.api("version") is None
        assert manager._session is None

    def test_not_configured(self, settings):
        settings.VICIDIAL_BASE_URL = ""

        assert VicidialManager().api("version") is None


# ============================================================================
# TEST: tasks
# ============================================================================

@pytest.fixture
def assignment(db):
    agent = Agent.objects.create(display_name="Alice", vicidial_list_id="2001")
    lead = Lead.objects.create(deal_id="1020", phone_number="5551234567", customer_name="Jane Public", stage="DQ")
    return LeadAssignment.objects.create(lead=lead, assignee=agent, assigned_at=timezone.now())


@pytest.mark.django_db
class TestSyncTasks:

    def test_sync_records_vicidial_lead(self, assignment):
        with patch('dialer.tasks.push_lead', return_value={
            'ok': True, 'function': 'add_lead', 'lead_id': 98765, 'raw': 'SUCCESS',
        }):
            outcome = sync_assignment_to_vicidial(str(assignment.assignment_id))

        assignment.refresh_from_db()
        assert outcome["status"] == "synced"
        assert assignment.vicidial_lead_id == 98765
        assert assignment.vicidial_synced_at is not None

    def test_sync_failure_leaves_row(self, assignment):
        with patch('dialer.tasks.push_lead', return_value={
            'ok': False, 'function': 'add_lead', 'lead_id': None, 'raw': 'ERROR',
        }):
            outcome = sync_assignment_to_vicidial(str(assignment.assignment_id))

        assignment.refresh_from_db()
        assert outcome["status"] == "failed"
        assert assignment.vicidial_synced_at is None

    def test_sync_skips_unassigned(self, assignment):
        assignment.status = 'unassigned'
        assignment.save()

        with patch('dialer.tasks.push_lead') as mock_push:
            outcome = sync_assignment_to_vicidial(str(assignment.assignment_id))

        assert outcome["status"] == "skipped"
        mock_push.assert_not_called()

    def test_sync_missing_assignment(self):
        outcome = sync_assignment_to_vicidial("00000000-0000-0000-0000-000000000000")

        assert outcome["status"] == "missing"

    def test_sync_unexpected_error(self, assignment):
        with patch('dialer.tasks.push_lead', side_effect=RuntimeError("redis down")):
            outcome = sync_assignment_to_vicidial(str(assignment.assignment_id))

        assert outcome["status"] == "error"
        assert "redis down" in outcome["error"]

    def test_release(self, assignment):
        assignment.status = 'unassigned'
        assignment.unassigned_at = timezone.now()
        assignment.save()

        with patch('dialer.tasks.release_lead', return_value={
            'matched': 1, 'updated': 1, 'lead_ids': [98765], 'status_set': 'ERI',
        }) as mock_release:
            outcome = release_assignment_from_vicidial(str(assignment.assignment_id))

        assert outcome["status"] == "released"
        assert outcome["updated"] == 1
        mock_release.assert_called_once_with("1020", "5551234567", "2001")

    def test_release_skips_reassigned_lead(self, assignment):
        """An old release must not park the lead once it has an active assignment again"""
        assignment.status = 'unassigned'
        assignment.unassigned_at = timezone.now()
        assignment.save()
        other = Agent.objects.create(display_name="Bilal", vicidial_list_id="2002")
        LeadAssignment.objects.create(lead=assignment.lead, assignee=other, assigned_at=timezone.now())

        with patch('dialer.tasks.release_lead') as mock_release:
            outcome = release_assignment_from_vicidial(str(assignment.assignment_id))

        assert outcome["status"] == "skipped"
        mock_release.assert_not_called()
