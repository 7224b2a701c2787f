"""
Unit tests for the assignments app

Tests cover:
- Percent normalization and validation
- Proportional count computation (largest remainder)
- Plan materialization
- Bulk assign lock handling
- Lead source / persistence helpers
- Bulk assign / unassign endpoints
"""

import math
import pytest
import orjson as json
from datetime import timedelta
from unittest.mock import MagicMock, patch
from django.urls import reverse
from django.utils import timezone

from assignments.allocation import (
    Allocation,
    ComputedAllocation,
    PlanEntry,
    allocations_from_payload,
    build_plan,
    compute_counts,
    even_allocations,
    has_duplicate_recipients,
    is_valid_total,
    normalize,
    summarize_plan,
)
from assignments.models import Agent, Lead, LeadAssignment
from assignments.utils import (
    apply_plan,
    bulk_assign_lock,
    get_active_agents,
    get_active_assignments,
    get_stage_counts,
    get_unassigned_lead_ids,
    parse_agent_id,
    PartialAssignmentError,
    unassign,
)


def A(recipient_id, percent):
    return Allocation(recipient_id=recipient_id, percent=percent)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def mock_conn():
    """Mock Redis connection"""
    with patch('assignments.utils.conn') as mock:
        yield mock


@pytest.fixture
def mock_logger():
    """Mock logger"""
    with patch('assignments.utils.logger') as mock:
        yield mock


@pytest.fixture
def free_lock(mock_conn):
    """Bulk assign lock that is always available"""
    mock_lock = MagicMock()
    mock_lock.acquire.return_value = True
    mock_lock.owned.return_value = True
    mock_conn.lock.return_value = mock_lock
    return mock_lock


@pytest.fixture
def mock_sync_task():
    with patch('assignments.views.sync_assignment_to_vicidial') as mock:
        yield mock


@pytest.fixture
def mock_release_task():
    with patch('assignments.views.release_assignment_from_vicidial') as mock:
        yield mock


@pytest.fixture
def agents(db):
    return [
        Agent.objects.create(display_name="Alice"),
        Agent.objects.create(display_name="Bilal"),
    ]


def make_leads(count, stage="Pending Lapse", start=0):
    now = timezone.now()
    return [
        Lead.objects.create(
            deal_id=f"D{start + i}",
            customer_name=f"Customer {start + i}",
            phone_number=f"555000{start + i:04d}",
            stage=stage,
            last_updated=now - timedelta(minutes=start + i),
        )
        for i in range(count)
    ]


def post_json(client, name, body):
    return client.post(reverse(name), data=json.dumps(body), content_type='application/json')


# ============================================================================
# TEST: normalize / is_valid_total
# ============================================================================

class TestNormalize:

    def test_clamps_percent_range(self):
        """Test percents are clamped into [0, 100]"""
        result = normalize([A("a", -5), A("b", 150), A("c", 42.5)])

        assert result == [A("a", 0.0), A("b", 100.0), A("c", 42.5)]

    def test_nan_becomes_zero(self):
        """Test NaN percent is treated as 0"""
        assert normalize([A("a", math.nan)]) == [A("a", 0.0)]

    def test_infinite_percents_are_clamped(self):
        """Test +inf clamps to 100 and -inf to 0"""
        assert normalize([A("a", math.inf), A("b", -math.inf)]) == [A("a", 100.0), A("b", 0.0)]

    def test_drops_empty_and_blank_recipients(self):
        """Test entries without a recipient are removed, order kept"""
        result = normalize([A("", 50), A("b", 10), A("   ", 20), A("a", 30)])

        assert [a.recipient_id for a in result] == ["b", "a"]

    def test_keeps_duplicates(self):
        """Test duplicate recipients are not merged"""
        result = normalize([A("a", 20), A("a", 30)])

        assert result == [A("a", 20), A("a", 30)]


class TestIsValidTotal:

    def test_empty_is_invalid(self):
        assert is_valid_total([]) is False

    def test_zero_total_is_invalid(self):
        assert is_valid_total([A("a", 0)]) is False

    def test_clamped_before_validation(self):
        """Test 150% clamps to 100% and is then valid"""
        assert is_valid_total([A("a", 150)]) is True

    def test_over_subscribed_is_invalid(self):
        assert is_valid_total([A("a", 60), A("b", 50)]) is False

    def test_exactly_hundred_is_valid(self):
        assert is_valid_total([A("a", 60), A("b", 40)]) is True

    def test_blank_recipients_do_not_count(self):
        assert is_valid_total([A("", 50)]) is False


class TestAllocationHelpers:

    def test_has_duplicate_recipients(self):
        assert has_duplicate_recipients([A("a", 10), A("a", 20)]) is True
        assert has_duplicate_recipients([A("a", 10), A("b", 20)]) is False

    def test_blank_recipients_are_not_duplicates(self):
        assert has_duplicate_recipients([A("", 10), A("", 20), A("a", 5)]) is False

    def test_even_allocations_three_agents(self):
        """Test remainder of 100 / n goes to the first agents"""
        result = even_allocations(["1", "2", "3"])

        assert result == [A("1", 34.0), A("2", 33.0), A("3", 33.0)]
        assert sum(a.percent for a in result) == 100

    def test_even_allocations_seven_agents(self):
        result = even_allocations([str(i) for i in range(7)])

        assert [a.percent for a in result] == [15, 15, 14, 14, 14, 14, 14]

    def test_even_allocations_empty(self):
        assert even_allocations([]) == []

    def test_allocations_from_payload(self):
        """Test raw JSON rows are converted once into typed allocations"""
        rows = [
            {"agent_id": 1, "percent": "60"},
            {"agent_id": None, "percent": 10},
            {"agent_id": "2", "percent": "abc"},
            "not-a-row",
        ]

        result = allocations_from_payload(rows)

        assert result[0] == A("1", 60.0)
        assert result[1] == A("", 10.0)
        assert result[2].recipient_id == "2"
        assert math.isnan(result[2].percent)
        assert normalize(result) == [A("1", 60.0), A("2", 0.0)]

    def test_allocations_from_payload_none(self):
        assert allocations_from_payload(None) == []


# ============================================================================
# TEST: compute_counts
# ============================================================================

class TestComputeCounts:

    def test_single_allocation_full_coverage(self):
        assert compute_counts(10, [A("A", 100)]) == [ComputedAllocation("A", 100.0, 10)]

    def test_largest_remainder_gets_extra_unit(self):
        """Test 33/33/34 over 10 leads gives the extra lead to the 34% agent"""
        result = compute_counts(10, [A("A", 33), A("B", 33), A("C", 34)])

        assert [r.count for r in result] == [3, 3, 4]
        assert sum(r.count for r in result) == 10

    def test_partial_coverage(self):
        """Test only 50% of the pool is assigned when allocations total 50%"""
        result = compute_counts(10, [A("A", 50)])

        assert result == [ComputedAllocation("A", 100.0, 5)]

    def test_percents_renormalized_to_share_of_total(self):
        result = compute_counts(10, [A("A", 30), A("B", 10)])

        assert [r.percent for r in result] == [75.0, 25.0]
        assert [r.count for r in result] == [3, 1]

    def test_over_hundred_is_capped(self):
        """Test 80% + 80% assigns the whole pool, split evenly"""
        result = compute_counts(10, [A("A", 80), A("B", 80)])

        assert [r.count for r in result] == [5, 5]
        assert [r.percent for r in result] == [50.0, 50.0]

    def test_remainder_order(self):
        """Test leftover units follow descending fractional remainder"""
        result = compute_counts(7, [A("A", 10), A("B", 20), A("C", 70)])

        assert [r.count for r in result] == [1, 1, 5]

    def test_ties_broken_by_input_order(self):
        result = compute_counts(2, [A("A", 25), A("B", 25), A("C", 25), A("D", 25)])

        assert [r.count for r in result] == [1, 1, 0, 0]

    def test_zero_resources(self):
        """Test empty pool gives zero counts with clamped percents"""
        result = compute_counts(0, [A("A", 40), A("B", 150)])

        assert result == [ComputedAllocation("A", 40.0, 0), ComputedAllocation("B", 100.0, 0)]

    def test_negative_resources(self):
        assert compute_counts(-3, [A("A", 100)]) == [ComputedAllocation("A", 100.0, 0)]

    def test_empty_allocations(self):
        assert compute_counts(10, []) == []

    def test_zero_percent_total(self):
        assert compute_counts(10, [A("A", 0), A("B", 0)]) == [
            ComputedAllocation("A", 0.0, 0),
            ComputedAllocation("B", 0.0, 0),
        ]

    def test_nothing_assignable_after_floor(self):
        """Test 50% of one lead floors to zero"""
        assert compute_counts(1, [A("A", 50)]) == [ComputedAllocation("A", 50.0, 0)]

    def test_nan_and_blank_entries(self):
        result = compute_counts(10, [A("A", math.nan), A("", 30), A("B", 50)])

        assert [(r.recipient_id, r.count) for r in result] == [("A", 0), ("B", 5)]

    def test_duplicate_recipients_compete_separately(self):
        result = compute_counts(3, [A("A", 50), A("A", 50)])

        assert [r.count for r in result] == [2, 1]
        assert summarize_plan(result) == {"A": 3}

    @pytest.mark.parametrize("total, percents", [
        (0, [100]),
        (1, [33, 33, 34]),
        (10, [33, 33, 34]),
        (17, [12.5, 37.5, 50]),
        (100, [1, 1, 1]),
        (101, [60, 70]),
        (999, [33.3, 33.3, 33.4]),
        (1234, [7, 13, 19, 23, 38]),
        (5, [0.1, 0.1]),
        (2000, [99.9]),
    ])
    def test_sum_invariant(self, total, percents):
        """Test counts always sum to floor(total * min(100, sum) / 100)"""
        allocations = [A(f"agent-{i}", p) for i, p in enumerate(percents)]

        result = compute_counts(total, allocations)

        percent_total = sum(a.percent for a in normalize(allocations))
        expected = math.floor(total * min(100, percent_total) / 100) if percent_total > 0 and total > 0 else 0
        assert sum(r.count for r in result) == expected
        assert all(isinstance(r.count, int) and r.count >= 0 for r in result)

    def test_deterministic(self):
        allocations = [A("A", 17), A("B", 29), A("C", 54)]

        assert compute_counts(97, allocations) == compute_counts(97, allocations)


# ============================================================================
# TEST: build_plan
# ============================================================================

class TestBuildPlan:

    def test_plan_ordering(self):
        result = build_plan(["r1", "r2", "r3"], [A("A", 100)])

        assert result == [
            PlanEntry("r1", "A"),
            PlanEntry("r2", "A"),
            PlanEntry("r3", "A"),
        ]

    def test_consecutive_ids_in_allocation_order(self):
        """Test each agent takes a consecutive block in input order"""
        result = build_plan(["r1", "r2", "r3", "r4", "r5"], [A("A", 60), A("B", 40)])

        assert [(p.resource_id, p.recipient_id) for p in result] == [
            ("r1", "A"), ("r2", "A"), ("r3", "A"), ("r4", "B"), ("r5", "B"),
        ]

    def test_partial_plan_leaves_tail_unassigned(self):
        result = build_plan(["r1", "r2", "r3", "r4"], [A("A", 50)])

        assert [p.resource_id for p in result] == ["r1", "r2"]

    def test_no_duplicate_resources(self):
        resource_ids = [f"r{i}" for i in range(53)]

        result = build_plan(resource_ids, [A("A", 21), A("B", 37), A("C", 42)])

        assigned = [p.resource_id for p in result]
        assert len(assigned) == len(set(assigned)) == 53

    def test_empty_inputs(self):
        assert build_plan([], [A("A", 100)]) == []
        assert build_plan(["r1"], []) == []

    def test_deterministic(self):
        resource_ids = [f"r{i}" for i in range(40)]
        allocations = [A("B", 45), A("A", 55)]

        assert build_plan(resource_ids, allocations) == build_plan(resource_ids, allocations)


# ============================================================================
# TEST: bulk_assign_lock
# ============================================================================

class TestBulkAssignLock:

    def test_lock_acquired_and_released(self, free_lock):
        with bulk_assign_lock() as acquired:
            assert acquired is True

        free_lock.acquire.assert_called_once()
        free_lock.release.assert_called_once()

    def test_lock_busy(self, mock_conn, mock_logger):
        """Test busy lock yields False and logs an error"""
        mock_lock = MagicMock()
        mock_lock.acquire.return_value = False
        mock_lock.owned.return_value = False
        mock_conn.lock.return_value = mock_lock

        with bulk_assign_lock() as acquired:
            assert acquired is False

        mock_logger.error.assert_called_once()
        mock_lock.release.assert_not_called()

    def test_lock_released_on_exception(self, free_lock):
        with pytest.raises(RuntimeError):
            with bulk_assign_lock():
                raise RuntimeError("boom")

        free_lock.release.assert_called_once()


# ============================================================================
# TEST: lead source / persistence
# ============================================================================

@pytest.mark.django_db
class TestLeadSource:

    def test_stage_counts_sorted_by_count(self):
        make_leads(3, stage="Pending Lapse")
        make_leads(5, stage="Charged Back", start=10)
        Lead.objects.create(deal_id="blank", stage="")
        Lead.objects.create(deal_id="inactive", stage="Charged Back", is_active=False)

        assert get_stage_counts() == [
            {'stage': "Charged Back", 'count': 5},
            {'stage': "Pending Lapse", 'count': 3},
        ]

    def test_stage_counts_carrier_filter(self):
        Lead.objects.create(deal_id="1", stage="DQ", carrier="Aetna")
        Lead.objects.create(deal_id="2", stage="DQ", carrier="Transamerica")

        assert get_stage_counts(["Aetna"]) == [{'stage': "DQ", 'count': 1}]

    def test_unassigned_ids_newest_first(self, agents):
        leads = make_leads(4)
        stale = Lead.objects.create(deal_id="stale", stage="Pending Lapse", last_updated=None)
        LeadAssignment.objects.create(lead=leads[1], assignee=agents[0], assigned_at=timezone.now())

        lead_ids, total, already_assigned = get_unassigned_lead_ids(["Pending Lapse"])

        assert lead_ids == [str(leads[0].id), str(leads[2].id), str(leads[3].id), str(stale.id)]
        assert total == 5
        assert already_assigned == 1

    def test_unassigned_assignment_frees_the_lead(self, agents):
        leads = make_leads(1)
        LeadAssignment.objects.create(
            lead=leads[0], assignee=agents[0], assigned_at=timezone.now(), status='unassigned'
        )

        lead_ids, _, already_assigned = get_unassigned_lead_ids(["Pending Lapse"])

        assert lead_ids == [str(leads[0].id)]
        assert already_assigned == 0

    def test_no_stages(self):
        assert get_unassigned_lead_ids([]) == ([], 0, 0)

    def test_max_leads_cap(self, settings):
        settings.BULK_ASSIGN_MAX_LEADS = 2
        make_leads(5)

        lead_ids, total, _ = get_unassigned_lead_ids(["Pending Lapse"])

        assert len(lead_ids) == 2
        assert total == 5

    def test_get_active_agents(self, agents):
        agents[1].is_active = False
        agents[1].save()

        result = get_active_agents([str(agents[0].id), str(agents[1].id), "abc", "99999", "²"])

        assert list(result) == [str(agents[0].id)]

    @pytest.mark.parametrize("value, expected", [
        ("12", 12),
        (12, 12),
        (" 7 ", 7),
        ("²", None),
        ("١٢", None),
        ("-3", None),
        ("", None),
        ("all", None),
    ])
    def test_parse_agent_id(self, value, expected):
        assert parse_agent_id(value) == expected


@pytest.mark.django_db
class TestPersistence:

    def test_apply_plan_in_batches(self, agents, settings):
        settings.ASSIGNMENT_BATCH_SIZE = 2
        leads = make_leads(5)
        plan = build_plan([str(l.id) for l in leads], [A(str(agents[0].id), 60), A(str(agents[1].id), 40)])

        created = apply_plan(plan, assigned_by=agents[1])

        assert len(created) == 5
        assert LeadAssignment.objects.filter(assignee=agents[0], status='active').count() == 3
        assert LeadAssignment.objects.filter(assignee=agents[1], status='active').count() == 2
        assert LeadAssignment.objects.filter(assigned_by=agents[1]).count() == 5

    def test_apply_empty_plan(self):
        assert apply_plan([]) == []

    def test_apply_plan_retries_operational_error(self, agents, settings):
        from django.db import OperationalError

        settings.ASSIGNMENT_MAX_RETRIES = 3
        leads = make_leads(1)
        plan = [PlanEntry(str(leads[0].id), str(agents[0].id))]
        real_bulk_create = LeadAssignment.objects.bulk_create
        calls = {"count": 0}

        def flaky_bulk_create(rows):
            calls["count"] += 1
            if calls["count"] < 2:
                raise OperationalError("database is locked")
            return real_bulk_create(rows)

        with patch.object(LeadAssignment.objects, 'bulk_create', side_effect=flaky_bulk_create), \
                patch('assignments.utils.time.sleep') as mock_sleep:
            created = apply_plan(plan)

        assert len(created) == 1
        assert calls["count"] == 2
        mock_sleep.assert_called_once()

    def test_apply_plan_gives_up_after_retries(self, agents, settings):
        from django.db import OperationalError

        settings.ASSIGNMENT_MAX_RETRIES = 2
        leads = make_leads(1)
        plan = [PlanEntry(str(leads[0].id), str(agents[0].id))]

        with patch.object(LeadAssignment.objects, 'bulk_create', side_effect=OperationalError("down")), \
                patch('assignments.utils.time.sleep'):
            with pytest.raises(PartialAssignmentError) as exc_info:
                apply_plan(plan)

        assert exc_info.value.created == []
        assert isinstance(exc_info.value.cause, OperationalError)

    def test_apply_plan_failure_reports_committed_batches(self, agents, settings):
        """Rows from batches before the failing one stay active and are handed back"""
        from django.db import OperationalError

        settings.ASSIGNMENT_BATCH_SIZE = 2
        settings.ASSIGNMENT_MAX_RETRIES = 1
        leads = make_leads(4)
        plan = build_plan([str(l.id) for l in leads], [A(str(agents[0].id), 100)])
        real_bulk_create = LeadAssignment.objects.bulk_create
        calls = {"count": 0}

        def second_batch_fails(rows):
            calls["count"] += 1
            if calls["count"] == 2:
                raise OperationalError("down")
            return real_bulk_create(rows)

        with patch.object(LeadAssignment.objects, 'bulk_create', side_effect=second_batch_fails):
            with pytest.raises(PartialAssignmentError) as exc_info:
                apply_plan(plan)

        committed = exc_info.value.created
        assert len(committed) == 2
        assert {a.lead_id for a in committed} == {leads[0].id, leads[1].id}
        assert LeadAssignment.objects.filter(status='active').count() == 2

    def test_get_active_assignments_filters(self, agents):
        pending = make_leads(2)
        charged = make_leads(2, stage="Charged Back", start=10)
        now = timezone.now()
        LeadAssignment.objects.create(lead=pending[0], assignee=agents[0], assigned_at=now)
        LeadAssignment.objects.create(lead=pending[1], assignee=agents[1], assigned_at=now)
        LeadAssignment.objects.create(lead=charged[0], assignee=agents[0], assigned_at=now)

        assert get_active_assignments(["Pending Lapse"]).count() == 2
        assert get_active_assignments(["Pending Lapse"], str(agents[0].id)).count() == 1
        assert get_active_assignments([], str(agents[0].id)).count() == 2
        assert get_active_assignments([]).count() == 0

    def test_unassign(self, agents):
        leads = make_leads(3)
        now = timezone.now()
        for lead in leads:
            LeadAssignment.objects.create(lead=lead, assignee=agents[0], assigned_at=now)

        changed = unassign(get_active_assignments(["Pending Lapse"]))

        assert len(changed) == 3
        assert LeadAssignment.objects.filter(status='active').count() == 0
        assert LeadAssignment.objects.filter(unassigned_at__isnull=False).count() == 3

    def test_unassign_nothing(self):
        assert unassign(LeadAssignment.objects.none()) == []


# ============================================================================
# TEST: endpoints
# ============================================================================

@pytest.mark.django_db
class TestListEndpoints:

    def test_list_agents(self, client, agents):
        agents[1].is_active = False
        agents[1].save()

        response = client.get(reverse('list_agents'))

        assert response.status_code == 200
        body = response.json()
        assert body['count'] == 1
        assert body['results'][0]['display_name'] == "Alice"

    def test_list_stages(self, client):
        make_leads(2)

        response = client.get(reverse('list_stages'))

        assert response.json()['results'] == [{'stage': "Pending Lapse", 'count': 2}]

    def test_wrong_method(self, client):
        response = client.get(reverse('bulk_assign'))

        assert response.status_code == 405


@pytest.mark.django_db
class TestPreviewBulkAssign:

    def test_preview_counts(self, client, agents):
        make_leads(10)

        response = post_json(client, 'preview_bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [
                {'agent_id': str(agents[0].id), 'percent': 33},
                {'agent_id': str(agents[1].id), 'percent': 33},
            ],
        })

        body = response.json()
        assert response.status_code == 200
        assert body['unassigned_leads'] == 10
        assert body['percent_total'] == 66
        assert body['valid_total'] is True
        assert body['to_assign'] == 6
        assert [a['count'] for a in body['allocations']] == [3, 3]
        assert LeadAssignment.objects.count() == 0

    def test_preview_even_distribution(self, client, agents):
        make_leads(9)

        response = post_json(client, 'preview_bulk_assign', {
            'stages': ["Pending Lapse"],
            'even_distribution': True,
        })

        body = response.json()
        assert [a['percent'] for a in body['allocations']] == [50.0, 50.0]
        assert [a['count'] for a in body['allocations']] == [5, 4]

    def test_preview_invalid_json(self, client):
        response = client.post(reverse('preview_bulk_assign'), data=b"{nope", content_type='application/json')

        assert response.status_code == 400


@pytest.mark.django_db
class TestBulkAssign:

    def test_bulk_assign_success(self, client, agents, free_lock, mock_sync_task):
        leads = make_leads(10)

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [
                {'agent_id': str(agents[0].id), 'percent': 60},
                {'agent_id': str(agents[1].id), 'percent': 40},
            ],
            'assigned_by': str(agents[1].id),
        })

        body = response.json()
        assert response.status_code == 200
        assert body['assigned'] == 10
        assert body['allocations'] == [
            {'agent_id': str(agents[0].id), 'count': 6},
            {'agent_id': str(agents[1].id), 'count': 4},
        ]
        newest_six = {l.id for l in leads[:6]}
        assert set(
            LeadAssignment.objects.filter(assignee=agents[0]).values_list('lead_id', flat=True)
        ) == newest_six
        assert mock_sync_task.delay.call_count == 10
        free_lock.release.assert_called_once()

    def test_bulk_assign_partial_coverage(self, client, agents, free_lock, mock_sync_task):
        make_leads(10)

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 50}],
        })

        assert response.json()['assigned'] == 5
        assert LeadAssignment.objects.count() == 5

    def test_bulk_assign_skips_assigned_leads(self, client, agents, free_lock, mock_sync_task):
        leads = make_leads(4)
        LeadAssignment.objects.create(lead=leads[0], assignee=agents[1], assigned_at=timezone.now())

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
        })

        assert response.json()['assigned'] == 3
        assert LeadAssignment.objects.filter(assignee=agents[0]).count() == 3

    def test_nothing_to_assign(self, client, agents, free_lock, mock_sync_task):
        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
        })

        assert response.status_code == 200
        assert response.json()['assigned'] == 0
        mock_sync_task.delay.assert_not_called()

    @pytest.mark.parametrize("body, message", [
        ({'allocations': [{'agent_id': '1', 'percent': 100}]}, 'stage'),
        ({'stages': ["Pending Lapse"], 'allocations': []}, 'allocation'),
        ({'stages': ["Pending Lapse"], 'allocations': [{'agent_id': '1', 'percent': 0}]}, 'percentages'),
    ])
    def test_bulk_assign_validation(self, client, agents, body, message):
        response = post_json(client, 'bulk_assign', body)

        assert response.status_code == 400
        assert message in response.json()['error']

    def test_bulk_assign_over_hundred_rejected(self, client, agents):
        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [
                {'agent_id': str(agents[0].id), 'percent': 70},
                {'agent_id': str(agents[1].id), 'percent': 50},
            ],
        })

        assert response.status_code == 400

    def test_bulk_assign_duplicate_agents_rejected(self, client, agents):
        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [
                {'agent_id': str(agents[0].id), 'percent': 50},
                {'agent_id': str(agents[0].id), 'percent': 50},
            ],
        })

        assert response.status_code == 400
        assert 'once' in response.json()['error']

    def test_bulk_assign_unknown_agent_rejected(self, client, agents):
        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': '424242', 'percent': 100}],
        })

        assert response.status_code == 400
        assert '424242' in response.json()['error']

    def test_bulk_assign_unknown_assigner(self, client, agents, free_lock):
        make_leads(2)

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
            'assigned_by': '424242',
        })

        assert response.status_code == 404

    def test_bulk_assign_lock_busy(self, client, agents, mock_conn, mock_sync_task):
        make_leads(2)
        mock_lock = MagicMock()
        mock_lock.acquire.return_value = False
        mock_lock.owned.return_value = False
        mock_conn.lock.return_value = mock_lock

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
        })

        assert response.status_code == 409
        assert LeadAssignment.objects.count() == 0

    def test_queue_failure_keeps_assignments(self, client, agents, free_lock, mock_sync_task):
        make_leads(2)
        mock_sync_task.delay.side_effect = ConnectionError("broker down")

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
        })

        assert response.status_code == 200
        assert LeadAssignment.objects.count() == 2

    def test_failed_batch_still_syncs_committed_rows(self, client, agents, free_lock, mock_sync_task, settings):
        """A later batch failing must not strand the batches already committed"""
        from django.db import OperationalError

        settings.ASSIGNMENT_BATCH_SIZE = 2
        settings.ASSIGNMENT_MAX_RETRIES = 1
        make_leads(4)
        real_bulk_create = LeadAssignment.objects.bulk_create
        calls = {"count": 0}

        def second_batch_fails(rows):
            calls["count"] += 1
            if calls["count"] == 2:
                raise OperationalError("down")
            return real_bulk_create(rows)

        with patch.object(LeadAssignment.objects, 'bulk_create', side_effect=second_batch_fails):
            response = post_json(client, 'bulk_assign', {
                'stages': ["Pending Lapse"],
                'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
            })

        body = response.json()
        active_ids = {
            str(a) for a in LeadAssignment.objects.filter(status='active').values_list('assignment_id', flat=True)
        }
        assert response.status_code == 500
        assert body['assigned'] == 2
        assert len(active_ids) == 2
        assert {c[0][0] for c in mock_sync_task.delay.call_args_list} == active_ids
        free_lock.release.assert_called_once()

    def test_bulk_assign_non_ascii_assigner_rejected(self, client, agents, free_lock):
        make_leads(2)

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': str(agents[0].id), 'percent': 100}],
            'assigned_by': '²',
        })

        assert response.status_code == 400
        assert LeadAssignment.objects.count() == 0

    def test_bulk_assign_non_ascii_agent_rejected(self, client, agents):
        make_leads(2)

        response = post_json(client, 'bulk_assign', {
            'stages': ["Pending Lapse"],
            'allocations': [{'agent_id': '²', 'percent': 100}],
        })

        assert response.status_code == 400


@pytest.mark.django_db
class TestBulkUnassign:

    def test_unassign_stage_for_all_agents(self, client, agents, mock_release_task):
        leads = make_leads(3)
        now = timezone.now()
        LeadAssignment.objects.create(lead=leads[0], assignee=agents[0], assigned_at=now)
        LeadAssignment.objects.create(lead=leads[1], assignee=agents[1], assigned_at=now)

        response = post_json(client, 'bulk_unassign', {'stages': ["Pending Lapse"], 'agent_id': 'all'})

        assert response.status_code == 200
        assert response.json()['unassigned'] == 2
        assert mock_release_task.delay.call_count == 2

    def test_unassign_one_agent_any_stage(self, client, agents, mock_release_task):
        pending = make_leads(1)
        charged = make_leads(1, stage="Charged Back", start=10)
        now = timezone.now()
        LeadAssignment.objects.create(lead=pending[0], assignee=agents[0], assigned_at=now)
        LeadAssignment.objects.create(lead=charged[0], assignee=agents[0], assigned_at=now)
        kept = LeadAssignment.objects.create(lead=make_leads(1, start=20)[0], assignee=agents[1], assigned_at=now)

        response = post_json(client, 'bulk_unassign', {'agent_id': str(agents[0].id)})

        assert response.json()['unassigned'] == 2
        kept.refresh_from_db()
        assert kept.status == 'active'

    def test_unassign_requires_scope(self, client):
        response = post_json(client, 'bulk_unassign', {'agent_id': 'all'})

        assert response.status_code == 400

    def test_unassign_bad_agent_id(self, client):
        response = post_json(client, 'bulk_unassign', {'stages': ["DQ"], 'agent_id': 'bob'})

        assert response.status_code == 400

    def test_unassign_non_ascii_agent_id(self, client):
        response = post_json(client, 'bulk_unassign', {'stages': ["DQ"], 'agent_id': '²'})

        assert response.status_code == 400
