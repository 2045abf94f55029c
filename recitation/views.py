"""
recitation/views.py.

JSON API for tickets and Personal Mushaf ledgers. Every view is async, runs the
synchronous engine call through ``sync_to_async`` and lets domain errors
propagate to ``halaqa.error_middleware.ApiErrorMiddleware``.
"""

import json
from typing import Any, Dict, Optional

from asgiref.sync import sync_to_async
from django.contrib.auth import SESSION_KEY
from django.contrib.auth.decorators import login_required
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST
from django_ratelimit.decorators import ratelimit

from .collaborators import Principal, load_collaborator
from .exceptions import ValidationError
from .ledger import mistake_ledger
from .mistake_types import catalog_payload
from .review import review_coordinator
from .workflow import ticket_payload, workflow_engine

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

HEARTBEAT_RATE = '240/h'
MISTAKE_RATE = '600/h'


def session_user_key(group: str, request: HttpRequest) -> str:
    """Rate-limit key from the session's user id (already loaded by auth)."""
    return str(request.session.get(SESSION_KEY, request.META.get('REMOTE_ADDR', '')))


async def _principal(request: HttpRequest) -> Principal:
    user = await request.auser()
    identity = load_collaborator('IDENTITY_STORE')
    return await sync_to_async(identity.principal_for)(user)


def _json_body(request: HttpRequest) -> Dict[str, Any]:
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _int_param(request: HttpRequest, name: str, default: int) -> int:
    raw = request.GET.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"Query parameter '{name}' must be an integer.") from exc


def _ticket_response(ticket, status: int = 200, **extra: Any) -> JsonResponse:
    payload = {'ticket': ticket_payload(ticket)}
    payload.update(extra)
    return JsonResponse(payload, status=status)


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


@login_required  # type: ignore
@require_http_methods(['GET', 'POST'])
async def tickets(request: HttpRequest) -> JsonResponse:
    """List visible tickets (GET) or open a pending ticket (POST)."""
    principal = await _principal(request)
    if request.method == 'POST':
        data = _json_body(request)
        ticket = await sync_to_async(workflow_engine.open)(
            principal,
            data.get('student_id'),
            data.get('workflow_step'),
            data.get('notes', ""),
        )
        return _ticket_response(ticket, status=201)

    found = await sync_to_async(workflow_engine.list_for)(
        principal,
        workflow_step=request.GET.get('workflow_step'),
        status=request.GET.get('status'),
    )
    return JsonResponse({'tickets': [ticket_payload(t) for t in found]})


@login_required  # type: ignore
@require_GET
async def pending_review(request: HttpRequest) -> JsonResponse:
    principal = await _principal(request)
    result = await sync_to_async(workflow_engine.pending_review)(
        principal,
        page=_int_param(request, 'page', 1),
        limit=_int_param(request, 'limit', 20),
    )
    return JsonResponse(result)


@login_required  # type: ignore
@require_GET
async def ticket_detail(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    ticket = await sync_to_async(workflow_engine.get)(ticket_id, principal)
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def start_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(workflow_engine.start)(
        ticket_id,
        principal,
        ayah_range=data.get('ayah_range'),
        assignment_id=data.get('assignment_id'),
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
@ratelimit(key=session_user_key, rate=HEARTBEAT_RATE, method='POST')  # type: ignore
async def heartbeat(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    ticket = await sync_to_async(workflow_engine.heartbeat)(ticket_id, principal)
    return JsonResponse(
        {
            'ticket_id': ticket.pk,
            'status': ticket.status,
            'last_heartbeat_at': ticket.last_heartbeat_at.isoformat(),
        }
    )


@login_required  # type: ignore
@require_POST
async def pause_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    ticket = await sync_to_async(workflow_engine.pause)(ticket_id, principal)
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def resume_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    ticket = await sync_to_async(workflow_engine.resume)(ticket_id, principal)
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def session_notes(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(workflow_engine.update_session_notes)(
        ticket_id, principal, data.get('session_notes')
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_http_methods(['POST', 'DELETE'])
@ratelimit(key=session_user_key, rate=MISTAKE_RATE, method='POST')  # type: ignore
async def ticket_mistakes(request: HttpRequest, ticket_id: int) -> JsonResponse:
    """Append a mistake (POST) or remove one by index (DELETE)."""
    principal = await _principal(request)
    data = _json_body(request)
    if request.method == 'DELETE':
        ticket = await sync_to_async(workflow_engine.remove_mistake)(
            ticket_id, principal, data.get('index')
        )
        return _ticket_response(ticket)
    ticket = await sync_to_async(workflow_engine.add_mistake)(ticket_id, principal, data)
    return _ticket_response(ticket, status=201)


@login_required  # type: ignore
@require_POST
async def submit_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(workflow_engine.submit)(
        ticket_id, principal, session_notes=data.get('session_notes')
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def approve_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket, report = await sync_to_async(review_coordinator.approve)(
        ticket_id, principal, data.get('review_notes', "")
    )
    return _ticket_response(ticket, sync=report.model_dump())


@login_required  # type: ignore
@require_POST
async def reject_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(review_coordinator.reject)(
        ticket_id, principal, data.get('review_notes', "")
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def reassign_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(review_coordinator.reassign)(
        ticket_id, principal, data.get('new_teacher_id'), data.get('reason', "")
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_POST
async def close_ticket(request: HttpRequest, ticket_id: int) -> JsonResponse:
    principal = await _principal(request)
    data = _json_body(request)
    ticket = await sync_to_async(review_coordinator.close)(
        ticket_id, principal, data.get('reason', "")
    )
    return _ticket_response(ticket)


@login_required  # type: ignore
@require_GET
async def recitation_history(request: HttpRequest, student_id: int) -> JsonResponse:
    """A student's tickets grouped by workflow step, with totals."""
    principal = await _principal(request)
    history = await sync_to_async(workflow_engine.recitation_history)(
        principal, student_id
    )
    return JsonResponse(history)


# ---------------------------------------------------------------------------
# Personal Mushaf
# ---------------------------------------------------------------------------


@login_required  # type: ignore
@require_GET
async def mushaf(request: HttpRequest, student_id: int) -> JsonResponse:
    principal = await _principal(request)
    ledger = await sync_to_async(mistake_ledger.get_ledger)(principal, student_id)
    return JsonResponse(ledger)


@login_required  # type: ignore
@require_GET
async def mushaf_display(request: HttpRequest, student_id: int) -> JsonResponse:
    """Ledger records annotated with their recency bucket."""
    principal = await _principal(request)
    rows = await sync_to_async(mistake_ledger.get_ledger_for_display)(
        principal, student_id
    )
    return JsonResponse({'mistakes': rows})


@login_required  # type: ignore
@require_GET
async def mushaf_by_date(request: HttpRequest, student_id: int) -> JsonResponse:
    principal = await _principal(request)
    groups = await sync_to_async(mistake_ledger.group_mistakes_by_date)(
        principal, student_id
    )
    return JsonResponse({'dates': groups})


@login_required  # type: ignore
@require_POST
@ratelimit(key=session_user_key, rate=MISTAKE_RATE, method='POST')  # type: ignore
async def mushaf_mistakes(request: HttpRequest, student_id: int) -> JsonResponse:
    """Merge one mistake, or a batch under ``{"mistakes": [...]}``."""
    principal = await _principal(request)
    data = _json_body(request)
    batch: Optional[Any] = data.get('mistakes')
    if batch is not None:
        if not isinstance(batch, list):
            raise ValidationError("'mistakes' must be a list.")
        result = await sync_to_async(mistake_ledger.add_mistakes)(
            principal, student_id, batch
        )
        return JsonResponse(result.model_dump(mode='json'), status=201)
    record = await sync_to_async(mistake_ledger.add_mistake)(principal, student_id, data)
    return JsonResponse({'mistake': record.model_dump(mode='json')}, status=201)


@login_required  # type: ignore
@require_POST
async def resolve_mushaf_mistake(
    request: HttpRequest, student_id: int, mistake_id: str
) -> JsonResponse:
    principal = await _principal(request)
    record = await sync_to_async(mistake_ledger.resolve_mistake)(
        principal, student_id, mistake_id
    )
    return JsonResponse({'mistake': record.model_dump(mode='json')})


@login_required  # type: ignore
@require_POST
async def filter_mushaf(request: HttpRequest, student_id: int) -> JsonResponse:
    principal = await _principal(request)
    result = await sync_to_async(mistake_ledger.filter_ledger)(
        principal, student_id, _json_body(request)
    )
    return JsonResponse(result)


@login_required  # type: ignore
@require_GET
async def mushaf_statistics(request: HttpRequest, student_id: int) -> JsonResponse:
    principal = await _principal(request)
    stats = await sync_to_async(mistake_ledger.get_statistics)(principal, student_id)
    return JsonResponse(stats.model_dump())


@login_required  # type: ignore
@require_GET
async def mistake_types(request: HttpRequest) -> JsonResponse:
    return JsonResponse(catalog_payload(request.GET.get('category')))
