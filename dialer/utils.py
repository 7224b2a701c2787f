import orjson as json
import logging
import re
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from retention_desk.constants import MAX_VICIDIAL_LEAD_ID, UNASSIGNED_COMMENT
from retention_desk.redis import VICIDIAL_LEAD_INDEX_REDIS_KEY, conn
from retention_desk.vicidial import vicidial_manager

logger = logging.getLogger(__name__)

_ADD_LEAD_SUCCESS = re.compile(r'^SUCCESS:\s*add_lead\b', re.IGNORECASE)
_ERROR_WORD = re.compile(r'\bERROR\b', re.IGNORECASE)


# ============================================================================
# PARSING HELPERS
# ============================================================================

def normalize_us_phone(phone) -> str:
    digits = re.sub(r'\D', '', phone or '')
    if len(digits) == 11 and digits.startswith('1'):
        return digits[1:]
    return digits


def split_name(full_name=None, first_name=None, last_name=None) -> Tuple[str, str]:
    first = (first_name or '').strip()
    last = (last_name or '').strip()
    if first or last:
        return first, last

    normalized = ' '.join((full_name or '').split())
    if not normalized:
        return 'Unknown', 'Contact'

    parts = normalized.split(' ')
    if len(parts) == 1:
        return parts[0], 'Contact'
    return parts[0], ' '.join(parts[1:])


def parse_add_lead_id(raw: str) -> Optional[int]:
    """Lead id from `SUCCESS: add_lead LEAD HAS BEEN ADDED - phone|list|lead_id|...`."""
    for line in (raw or '').split('\n'):
        line = line.strip()
        if not _ADD_LEAD_SUCCESS.match(line):
            continue
        after_dash = line.split(' - ')[1] if ' - ' in line else ''
        parts = [p.strip() for p in after_dash.split('|')]
        token = parts[2] if len(parts) > 2 else ''
        if token.isascii() and token.isdecimal() and int(token) > 0:
            return int(token)
    return None


def parse_lead_ids(raw: str) -> List[int]:
    """Every plausible lead id in a lead_search / check_phone_number response."""
    lead_ids = []
    for line in (raw or '').split('\n'):
        line = line.strip()
        if not line or line.upper().startswith('ERROR:'):
            continue
        for token in line.split('|'):
            token = token.strip()
            if token.isascii() and token.isdecimal():
                lead_id = int(token)
                if 0 < lead_id < MAX_VICIDIAL_LEAD_ID and lead_id not in lead_ids:
                    lead_ids.append(lead_id)
    return lead_ids


def is_error(result) -> bool:
    if result is None:
        return True
    return 'ERROR' in result.parsed or bool(_ERROR_WORD.search(result.raw or ''))


def build_lead_details_url(deal_id) -> Optional[str]:
    if not deal_id:
        return None
    base = settings.RETENTION_PORTAL_BASE_URL.rstrip('/')
    return f"{base}/agent/assigned-lead-details?dealId={deal_id}"


# ============================================================================
# LEAD INDEX (REDIS)
# ============================================================================

def _index_key(deal_id, phone_number, list_id, agent_id) -> str:
    return '|'.join([
        str(deal_id or '').strip(),
        normalize_us_phone(phone_number),
        str(list_id or '').strip(),
        str(agent_id or '').strip(),
    ])


def get_lead_index_entry(deal_id, phone_number, list_id, agent_id) -> Optional[Dict]:
    raw_data = conn.hget(VICIDIAL_LEAD_INDEX_REDIS_KEY, _index_key(deal_id, phone_number, list_id, agent_id))
    if not raw_data:
        return None

    try:
        return json.loads(raw_data)
    except json.JSONDecodeError:
        logger.error(f"Failed to decode {VICIDIAL_LEAD_INDEX_REDIS_KEY} entry for deal {deal_id}")
        return None


def upsert_lead_index(deal_id, phone_number, list_id, agent_id, vicidial_lead_id, assignment_id=None) -> Dict:
    entry = {
        'assignment_id': assignment_id,
        'deal_id': str(deal_id or ''),
        'phone_number': normalize_us_phone(phone_number),
        'list_id': str(list_id or ''),
        'agent_id': str(agent_id or ''),
        'vicidial_lead_id': vicidial_lead_id,
        'updated_at': timezone.now().isoformat(),
    }
    conn.hset(
        VICIDIAL_LEAD_INDEX_REDIS_KEY,
        _index_key(deal_id, phone_number, list_id, agent_id),
        json.dumps(entry)
    )
    return entry


# ============================================================================
# VICIDIAL OPERATIONS
# ============================================================================

def get_agent_target(agent) -> Tuple[str, str]:
    """Campaign and list an agent's leads go to, falling back to the defaults."""
    campaign_id = agent.vicidial_campaign_id or settings.VICIDIAL_DEFAULT_CAMPAIGN_ID
    list_id = agent.vicidial_list_id or settings.VICIDIAL_DEFAULT_LIST_ID
    return campaign_id, list_id


def push_lead(assignment) -> Dict:
    """
    Put an assigned lead into the agent's VICIdial list.

    Reuses the VICIdial lead recorded in the index (update_lead) when one
    exists, otherwise creates one with add_lead.
    """
    lead = assignment.lead
    agent = assignment.assignee
    campaign_id, list_id = get_agent_target(agent)
    phone_number = normalize_us_phone(lead.phone_number)
    first_name, last_name = split_name(lead.customer_name)

    if not phone_number:
        logger.warning(f"Lead {lead.deal_id} has no phone number, skipping VICIdial push")
        return {'ok': False, 'function': None, 'lead_id': None, 'raw': 'missing phone number'}

    details_url = build_lead_details_url(lead.deal_id)
    comments = f"Lead Details: {details_url}" if details_url else None

    existing = get_lead_index_entry(lead.deal_id, phone_number, list_id, agent.id)
    if existing and existing.get('vicidial_lead_id'):
        existing_lead_id = existing['vicidial_lead_id']
        result = vicidial_manager.api('update_lead', {
            'lead_id': existing_lead_id,
            'phone_number': phone_number,
            'first_name': first_name,
            'last_name': last_name,
            'status': 'NEW',
            'comments': comments,
        })
        if not is_error(result):
            upsert_lead_index(lead.deal_id, phone_number, list_id, agent.id, existing_lead_id,
                              assignment_id=str(assignment.assignment_id))
            return {'ok': True, 'function': 'update_lead', 'lead_id': existing_lead_id, 'raw': result.raw}
        logger.warning(f"Reusing VICIdial lead {existing_lead_id} failed, falling back to add_lead")

    result = vicidial_manager.api('add_lead', {
        'phone_number': phone_number,
        'phone_code': settings.VICIDIAL_DEFAULT_PHONE_CODE,
        'first_name': first_name,
        'last_name': last_name,
        'campaign_id': campaign_id or None,
        'list_id': list_id or None,
        'vendor_lead_code': lead.deal_id,
        'source_id': agent.vicidial_user or str(agent.id),
        'comments': comments,
    })
    if is_error(result):
        raw = result.raw if result else None
        logger.error(f"VICIdial add_lead failed for deal {lead.deal_id}: {raw}")
        return {'ok': False, 'function': 'add_lead', 'lead_id': None, 'raw': raw}

    new_lead_id = parse_add_lead_id(result.raw)
    if not new_lead_id:
        logger.warning(f"VICIdial add_lead for deal {lead.deal_id} returned no lead id: {result.raw}")
        return {'ok': False, 'function': 'add_lead', 'lead_id': None, 'raw': result.raw}

    upsert_lead_index(lead.deal_id, phone_number, list_id, agent.id, new_lead_id,
                      assignment_id=str(assignment.assignment_id))
    return {'ok': result.ok, 'function': 'add_lead', 'lead_id': new_lead_id, 'raw': result.raw}


def find_vicidial_lead_ids(deal_id, phone_number, list_id=None) -> List[int]:
    """Search by vendor code (deal id) and by phone number; ids in first-seen order."""
    lead_ids = []

    searches = []
    if deal_id:
        searches.append(('lead_search', {
            'search_method': 'VENDOR_LEAD_CODE',
            'search_value': deal_id,
            'list_id': list_id or None,
        }))
    if phone_number:
        searches.append(('check_phone_number', {'phone_number': phone_number}))
        searches.append(('lead_search', {
            'search_method': 'PHONE_NUMBER',
            'search_value': phone_number,
            'list_id': list_id or None,
        }))

    for function, params in searches:
        result = vicidial_manager.api(function, params)
        if result is None:
            continue
        for lead_id in parse_lead_ids(result.raw):
            if lead_id not in lead_ids:
                lead_ids.append(lead_id)

    return lead_ids


def release_lead(deal_id, phone_number, list_id=None) -> Dict:
    """Park every VICIdial lead matching the deal or phone in the unassigned status."""
    phone_number = normalize_us_phone(phone_number)
    status = settings.VICIDIAL_UNASSIGN_STATUS

    if not deal_id and not phone_number:
        raise ValueError('deal_id or phone_number is required')

    lead_ids = find_vicidial_lead_ids(deal_id, phone_number, list_id)
    updated = 0
    for lead_id in lead_ids:
        result = vicidial_manager.api('update_lead', {
            'lead_id': lead_id,
            'status': status,
            'comments': UNASSIGNED_COMMENT,
        })
        if not is_error(result):
            updated += 1

    return {
        'matched': len(lead_ids),
        'updated': updated,
        'lead_ids': lead_ids,
        'status_set': status,
    }
