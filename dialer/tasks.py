"""
Dialer Tasks - VICIdial mirror of lead assignments.

One task per assignment, queued by the bulk assign / unassign endpoints once
the assignment rows are committed.
"""

import logging
from CELERY_INIT import app
from django.utils import timezone

from assignments.models import LeadAssignment
from .utils import get_agent_target, push_lead, release_lead

logger = logging.getLogger(__name__)


@app.task(bind=True)
def sync_assignment_to_vicidial(self, assignment_id):
    """Push an active assignment into the assignee's VICIdial list."""
    try:
        assignment = (
            LeadAssignment.objects
            .select_related('lead', 'assignee')
            .get(assignment_id=assignment_id)
        )
    except LeadAssignment.DoesNotExist:
        logger.error(f"Assignment {assignment_id} not found, nothing to sync")
        return {'status': 'missing', 'assignment_id': assignment_id}

    if assignment.status != 'active':
        logger.info(f"Assignment {assignment_id} is {assignment.status}, skipping VICIdial push")
        return {'status': 'skipped', 'assignment_id': assignment_id}

    try:
        result = push_lead(assignment)
    except Exception as exc:
        logger.exception(f"Error pushing assignment {assignment_id} to VICIdial: {exc}")
        return {'status': 'error', 'assignment_id': assignment_id, 'error': str(exc)}

    if not result['ok']:
        return {'status': 'failed', 'assignment_id': assignment_id, 'raw': result['raw']}

    LeadAssignment.objects.filter(id=assignment.id).update(
        vicidial_lead_id=result['lead_id'],
        vicidial_synced_at=timezone.now(),
    )
    logger.info(f"Assignment {assignment_id} synced to VICIdial lead {result['lead_id']} ({result['function']})")
    return {'status': 'synced', 'assignment_id': assignment_id, 'lead_id': result['lead_id']}


@app.task(bind=True)
def release_assignment_from_vicidial(self, assignment_id):
    """Move the VICIdial leads of an unassigned lead out of the agent's queue."""
    try:
        assignment = (
            LeadAssignment.objects
            .select_related('lead', 'assignee')
            .get(assignment_id=assignment_id)
        )
    except LeadAssignment.DoesNotExist:
        logger.error(f"Assignment {assignment_id} not found, nothing to release")
        return {'status': 'missing', 'assignment_id': assignment_id}

    # The lead may have been re-assigned while this task was queued
    if LeadAssignment.objects.filter(lead_id=assignment.lead_id, status='active').exists():
        logger.info(f"Lead {assignment.lead.deal_id} is assigned again, skipping VICIdial release")
        return {'status': 'skipped', 'assignment_id': assignment_id}

    _, list_id = get_agent_target(assignment.assignee)

    try:
        result = release_lead(assignment.lead.deal_id, assignment.lead.phone_number, list_id or None)
    except Exception as exc:
        logger.exception(f"Error releasing assignment {assignment_id} in VICIdial: {exc}")
        return {'status': 'error', 'assignment_id': assignment_id, 'error': str(exc)}

    logger.info(
        f"Assignment {assignment_id}: {result['updated']}/{result['matched']} VICIdial leads "
        f"set to {result['status_set']}"
    )
    return {'status': 'released', 'assignment_id': assignment_id, **result}
