import logging
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence, Tuple

from django.conf import settings
from django.db import DatabaseError, OperationalError, transaction
from django.db.models import Count, F
from django.utils import timezone

from retention_desk.constants import BATCH_BACKOFF_SECONDS
from retention_desk.redis import BULK_ASSIGN_LOCK_REDIS_KEY, LOCK_TIMEOUTS, LOCK_WAIT, SLEEP, conn
from .allocation import PlanEntry
from .models import Agent, Lead, LeadAssignment

logger = logging.getLogger(__name__)


# ============================================================================
# LEAD SOURCE
# ============================================================================

def get_stage_counts(carriers: Optional[Sequence[str]] = None) -> List[Dict]:
    """Stages of active leads with their lead counts, largest first."""
    leads = Lead.objects.filter(is_active=True).exclude(stage='')
    if carriers:
        leads = leads.filter(carrier__in=carriers)

    rows = leads.values('stage').annotate(count=Count('id')).order_by('-count', 'stage')
    return [{'stage': row['stage'], 'count': row['count']} for row in rows]


def get_unassigned_lead_ids(stages: Sequence[str]) -> Tuple[List[str], int, int]:
    """
    Lead ids in `stages` with no active assignment, most recently updated first.

    Returns (lead_ids, total_in_stages, already_assigned).
    """
    if not stages:
        return [], 0, 0

    leads = Lead.objects.filter(stage__in=stages, is_active=True)
    total = leads.count()
    already_assigned = leads.filter(assignments__status='active').distinct().count()

    lead_ids = (
        leads
        .exclude(assignments__status='active')
        .order_by(F('last_updated').desc(nulls_last=True), '-id')
        .values_list('id', flat=True)[:settings.BULK_ASSIGN_MAX_LEADS]
    )
    return [str(lead_id) for lead_id in lead_ids], total, already_assigned


# ============================================================================
# RECIPIENT REGISTRY
# ============================================================================

def parse_agent_id(value) -> Optional[int]:
    """Agent primary key from a body value, or None unless it is plain ASCII digits."""
    text = str(value).strip()
    if text.isascii() and text.isdecimal():
        return int(text)
    return None


def get_active_agents(agent_ids: Sequence[str]) -> Dict[str, Agent]:
    """Active agents keyed by their id as a string. Unknown or malformed ids are left out."""
    numeric_ids = {parse_agent_id(agent_id) for agent_id in agent_ids} - {None}
    if not numeric_ids:
        return {}
    agents = Agent.objects.filter(id__in=numeric_ids, is_active=True)
    return {str(agent.id): agent for agent in agents}


# ============================================================================
# PERSISTENCE
# ============================================================================

@contextmanager
def bulk_assign_lock():
    """Yields True when this caller owns the bulk-assign lock, False if it is busy."""
    assign_lock = conn.lock(BULK_ASSIGN_LOCK_REDIS_KEY, timeout=LOCK_TIMEOUTS, sleep=SLEEP)
    try:
        acquired = assign_lock.acquire(blocking_timeout=LOCK_WAIT)
        if not acquired:
            logger.error("Could not acquire bulk assign lock - another assignment is running")
        yield acquired
    finally:
        if assign_lock.owned():
            assign_lock.release()


class PartialAssignmentError(Exception):
    """A batch insert failed; `created` holds the rows committed before it."""

    def __init__(self, created, cause):
        super().__init__(str(cause))
        self.created = list(created)
        self.cause = cause


def _insert_batch(rows: List[LeadAssignment]) -> List[LeadAssignment]:
    max_retries = max(1, settings.ASSIGNMENT_MAX_RETRIES)
    for attempt in range(1, max_retries + 1):
        try:
            with transaction.atomic():
                return LeadAssignment.objects.bulk_create(rows)
        except OperationalError as e:
            logger.warning(f"Assignment batch insert attempt {attempt} failed: {e}")
            if attempt == max_retries:
                raise
            time.sleep(BATCH_BACKOFF_SECONDS * attempt)


def apply_plan(plan: Sequence[PlanEntry], assigned_by: Optional[Agent] = None) -> List[LeadAssignment]:
    """
    Persist a plan as active LeadAssignment rows.

    Each batch commits on its own, so a failure part way through keeps the
    batches already written. Those rows travel on the PartialAssignmentError
    raised for the failing batch.
    """
    if not plan:
        return []

    now = timezone.now()
    batch_size = max(1, settings.ASSIGNMENT_BATCH_SIZE)
    created = []

    for start in range(0, len(plan), batch_size):
        batch = plan[start:start + batch_size]
        rows = [
            LeadAssignment(
                lead_id=int(entry.resource_id),
                assignee_id=int(entry.recipient_id),
                assigned_by=assigned_by,
                status='active',
                assigned_at=now,
            )
            for entry in batch
        ]
        try:
            created.extend(_insert_batch(rows))
        except DatabaseError as e:
            logger.error(f"Assignment batch at {start} failed after {len(created)}/{len(plan)} leads: {e}")
            raise PartialAssignmentError(created, e) from e
        logger.info(f"Assigned {len(created)}/{len(plan)} leads")

    return created


def get_active_assignments(stages: Sequence[str], agent_id: Optional[str] = None):
    """
    Active assignments for the given stages, optionally for one agent.

    With no stages, only a specific agent's assignments (any stage) are returned.
    """
    assignments = LeadAssignment.objects.filter(status='active').select_related('lead', 'assignee')

    if not stages:
        if not agent_id:
            return LeadAssignment.objects.none()
        return assignments.filter(assignee_id=agent_id).order_by('-assigned_at')

    assignments = assignments.filter(lead__stage__in=stages)
    if agent_id:
        assignments = assignments.filter(assignee_id=agent_id)
    return assignments


def unassign(assignments) -> List[str]:
    """Mark assignments unassigned. Returns the assignment ids that changed."""
    assignment_ids = list(assignments.values_list('assignment_id', flat=True))
    if not assignment_ids:
        return []

    now = timezone.now()
    batch_size = max(1, settings.ASSIGNMENT_BATCH_SIZE)
    changed = []

    for start in range(0, len(assignment_ids), batch_size):
        chunk = assignment_ids[start:start + batch_size]
        with transaction.atomic():
            still_active = list(
                LeadAssignment.objects
                .select_for_update()
                .filter(assignment_id__in=chunk, status='active')
                .values_list('assignment_id', flat=True)
            )
            LeadAssignment.objects.filter(assignment_id__in=still_active).update(
                status='unassigned',
                unassigned_at=now,
            )
        changed.extend(str(assignment_id) for assignment_id in still_active)

    logger.info(f"Unassigned {len(changed)} leads")
    return changed
