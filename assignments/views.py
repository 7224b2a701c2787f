"""
API Views for bulk lead assignment.

JSON endpoints a manager uses to split unassigned leads across agents by
percentage, and to take leads back.
"""

from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt
from django.db import IntegrityError
import orjson as json
import logging

from dialer.tasks import release_assignment_from_vicidial, sync_assignment_to_vicidial
from .allocation import (
    allocations_from_payload,
    build_plan,
    compute_counts,
    even_allocations,
    has_duplicate_recipients,
    is_valid_total,
    normalize,
    summarize_plan,
)
from .models import Agent
from .utils import (
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

logger = logging.getLogger(__name__)


def _serialize_agent(agent):
    """Convert agent to JSON dict."""
    return {
        'id': str(agent.id),
        'display_name': agent.display_name,
        'vicidial_user': agent.vicidial_user,
        'is_active': agent.is_active,
    }


def _serialize_computed(computed):
    return [
        {'agent_id': a.recipient_id, 'percent': round(a.percent, 4), 'count': a.count}
        for a in computed
    ]


def _parse_stages(data):
    stages = data.get('stages') or []
    if isinstance(stages, str):
        stages = [stages]
    return [s.strip() for s in stages if isinstance(s, str) and s.strip()]


def _enqueue(task, assignment_ids):
    """Queue one dialer sync per assignment. The assignment rows are already committed."""
    for assignment_id in assignment_ids:
        try:
            task.delay(assignment_id)
        except Exception as e:
            logger.error(f"Could not queue {task.name} for assignment {assignment_id}: {e}")


def _resolve_allocations(data):
    """Allocations from the body, or an even split across all active agents."""
    if data.get('even_distribution'):
        agent_ids = [str(agent_id) for agent_id in Agent.objects.filter(is_active=True).values_list('id', flat=True)]
        return even_allocations(agent_ids)
    return normalize(allocations_from_payload(data.get('allocations')))


@csrf_exempt
@require_http_methods(["GET"])
def list_agents(request):
    """List agents that can receive leads."""
    try:
        agents = Agent.objects.filter(is_active=True)
        return JsonResponse({
            'count': agents.count(),
            'results': [_serialize_agent(agent) for agent in agents]
        })
    except Exception as e:
        logger.error(f"Error listing agents: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["GET"])
def list_stages(request):
    """
    List GHL stages with lead counts.

    GET /api/assignments/stages/?carrier=Aetna&carrier=Transamerica
    """
    try:
        carriers = [c for c in request.GET.getlist('carrier') if c]
        stages = get_stage_counts(carriers)
        return JsonResponse({'count': len(stages), 'results': stages})
    except Exception as e:
        logger.error(f"Error listing stages: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def preview_bulk_assign(request):
    """
    Show how many leads each agent would get, without writing anything.

    POST /api/assignments/bulk-assign/preview/
    {
        "stages": ["Pending Lapse"],
        "allocations": [{"agent_id": "1", "percent": 60}, {"agent_id": "2", "percent": 40}],
        "even_distribution": false
    }
    """
    try:
        data = json.loads(request.body)
        stages = _parse_stages(data)
        allocations = _resolve_allocations(data)

        lead_ids, total, already_assigned = get_unassigned_lead_ids(stages)
        computed = compute_counts(len(lead_ids), allocations)

        return JsonResponse({
            'stages': stages,
            'total_leads': total,
            'assigned_leads': already_assigned,
            'unassigned_leads': len(lead_ids),
            'percent_total': round(sum(a.percent for a in allocations), 4),
            'valid_total': is_valid_total(allocations),
            'duplicate_agents': has_duplicate_recipients(allocations),
            'to_assign': sum(a.count for a in computed),
            'allocations': _serialize_computed(computed),
        })
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Exception as e:
        logger.error(f"Error previewing bulk assignment: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def bulk_assign(request):
    """
    Assign unassigned leads in the selected stages across agents.

    POST /api/assignments/bulk-assign/
    {
        "stages": ["Pending Lapse", "Charged Back"],
        "allocations": [{"agent_id": "1", "percent": 50}, {"agent_id": "2", "percent": 50}],
        "even_distribution": false,
        "assigned_by": "7"
    }
    """
    try:
        data = json.loads(request.body)
        stages = _parse_stages(data)
        allocations = _resolve_allocations(data)

        if not stages:
            return JsonResponse({'error': 'Select at least one stage'}, status=400)
        if not allocations:
            return JsonResponse({'error': 'Add at least one agent allocation'}, status=400)
        if not is_valid_total(allocations):
            return JsonResponse(
                {'error': 'Allocation percentages must add up to more than 0 and at most 100'},
                status=400
            )
        if has_duplicate_recipients(allocations):
            return JsonResponse({'error': 'Each agent can only appear once'}, status=400)

        agents = get_active_agents([a.recipient_id for a in allocations])
        unknown = [a.recipient_id for a in allocations if a.recipient_id not in agents]
        if unknown:
            return JsonResponse({'error': f'Unknown or inactive agents: {", ".join(unknown)}'}, status=400)

        assigned_by = None
        assigned_by_id = data.get('assigned_by')
        if assigned_by_id is not None:
            assigned_by_pk = parse_agent_id(assigned_by_id)
            if assigned_by_pk is None:
                return JsonResponse({'error': 'assigned_by must be an agent id'}, status=400)
            assigned_by = Agent.objects.get(id=assigned_by_pk)

        with bulk_assign_lock() as acquired:
            if not acquired:
                return JsonResponse(
                    {'error': 'Another bulk assignment is in progress. Try again shortly.'},
                    status=409
                )

            lead_ids, _, _ = get_unassigned_lead_ids(stages)
            plan = build_plan(lead_ids, allocations)
            if not plan:
                return JsonResponse({
                    'message': 'Nothing to assign',
                    'assigned': 0,
                    'allocations': [],
                })

            created = apply_plan(plan, assigned_by=assigned_by)

        _enqueue(sync_assignment_to_vicidial, [str(a.assignment_id) for a in created])

        per_agent = summarize_plan(compute_counts(len(lead_ids), allocations))
        logger.info(f"Bulk assigned {len(created)} leads across {len(allocations)} agent(s)")

        return JsonResponse({
            'message': f'Assigned {len(created)} leads across {len(allocations)} agent(s)',
            'assigned': len(created),
            'allocations': [
                {'agent_id': agent_id, 'count': count}
                for agent_id, count in per_agent.items()
            ],
        })

    except PartialAssignmentError as e:
        # Rows from earlier batches are committed and still need their dialer sync
        _enqueue(sync_assignment_to_vicidial, [str(a.assignment_id) for a in e.created])
        conflict = isinstance(e.cause, IntegrityError)
        return JsonResponse({
            'error': (
                'Some leads were assigned by someone else. Reload and try again.'
                if conflict else f'Bulk assignment stopped part way: {e}'
            ),
            'assigned': len(e.created),
        }, status=409 if conflict else 500)
    except Agent.DoesNotExist:
        return JsonResponse({'error': 'Assigning agent not found'}, status=404)
    except IntegrityError as e:
        logger.error(f"Bulk assignment collided with an existing assignment: {str(e)}")
        return JsonResponse({'error': 'Some leads were assigned by someone else. Reload and try again.'}, status=409)
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Exception as e:
        logger.error(f"Error bulk assigning leads: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def bulk_unassign(request):
    """
    Take back active assignments.

    POST /api/assignments/bulk-unassign/
    {
        "stages": ["Pending Lapse"],
        "agent_id": "all"
    }
    """
    try:
        data = json.loads(request.body)
        stages = _parse_stages(data)
        agent_id = data.get('agent_id') or 'all'
        if agent_id != 'all':
            agent_pk = parse_agent_id(agent_id)
            if agent_pk is None:
                return JsonResponse({'error': 'agent_id must be an agent id or "all"'}, status=400)
            agent_id = str(agent_pk)
        else:
            agent_id = None

        if not stages and agent_id is None:
            return JsonResponse({'error': 'Select at least one stage or an agent'}, status=400)

        changed = unassign(get_active_assignments(stages, agent_id))

        _enqueue(release_assignment_from_vicidial, changed)

        return JsonResponse({
            'message': f'Unassigned {len(changed)} leads',
            'unassigned': len(changed),
        })
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Exception as e:
        logger.error(f"Error bulk unassigning leads: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)
