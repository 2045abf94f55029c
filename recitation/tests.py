"""
Tests for the recitation JSON API.

The async views are driven through the Django test client; domain errors are
expected to come back as JSON payloads rendered by ``ApiErrorMiddleware``.
"""

import json
from typing import Any, Dict, Optional

from django.http import HttpResponse
from django.test import Client, RequestFactory, TestCase
from django.urls import reverse
from django_ratelimit.exceptions import Ratelimited

from halaqa.error_middleware import ApiErrorMiddleware

from .exceptions import InvalidState
from .models import MemberProfile, PersonalMushaf, Ticket
from .testing import make_member

Role = MemberProfile.Role

RANGE = {'from_surah': 1, 'from_ayah': 1, 'to_surah': 1, 'to_ayah': 7}
MADD = {'type': 'madd', 'category': 'tajweed', 'page': 1, 'surah': 1, 'ayah': 3}


class ApiTestCase(TestCase):
    """Members and a JSON-speaking client."""

    def setUp(self) -> None:
        self.admin = make_member('admin', Role.ADMIN)
        self.teacher = make_member('teacher1', Role.TEACHER)
        self.teacher2 = make_member('teacher2', Role.TEACHER)
        self.student = make_member('student', Role.STUDENT)
        self.other_student = make_member('other', Role.STUDENT)
        self.client = Client()

    def login(self, user) -> None:
        self.client.force_login(user)

    def post(self, name: str, data: Optional[Dict[str, Any]] = None, **kwargs):
        return self.client.post(
            reverse(name, kwargs=kwargs),
            data=json.dumps(data or {}),
            content_type='application/json',
        )

    def get(self, name: str, **kwargs):
        return self.client.get(reverse(name, kwargs=kwargs))

    def open_ticket(self, step: str = 'sabq') -> int:
        self.login(self.admin)
        response = self.post(
            'tickets', {'student_id': self.student.pk, 'workflow_step': step}
        )
        self.assertEqual(response.status_code, 201)
        return response.json()['ticket']['id']

    def started_ticket(self) -> int:
        ticket_id = self.open_ticket()
        self.login(self.teacher)
        response = self.post('start_ticket', {'ayah_range': RANGE}, ticket_id=ticket_id)
        self.assertEqual(response.status_code, 200)
        return ticket_id


class TicketApiTest(ApiTestCase):
    def test_requires_login(self) -> None:
        """Anonymous callers are redirected to the login page."""
        response = self.client.get(reverse('tickets'))

        self.assertEqual(response.status_code, 302)
        self.assertIn('login', response.url)

    def test_full_review_flow(self) -> None:
        """Open, listen, submit and approve a ticket over HTTP."""
        ticket_id = self.started_ticket()

        response = self.post('ticket_mistakes', MADD, ticket_id=ticket_id)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.json()['ticket']['mistakes']), 1)

        response = self.post('ticket_heartbeat', ticket_id=ticket_id)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'in-progress')

        response = self.post(
            'submit_ticket', {'session_notes': 'Good fluency'}, ticket_id=ticket_id
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['ticket']['status'], 'submitted')

        self.login(self.admin)
        pending = self.client.get(reverse('pending_review'), {'limit': 10}).json()
        self.assertEqual([t['id'] for t in pending['tickets']], [ticket_id])
        self.assertEqual(pending['pagination']['total'], 1)

        response = self.post(
            'approve_ticket', {'review_notes': 'Well done'}, ticket_id=ticket_id
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['ticket']['status'], 'approved')
        self.assertEqual(body['ticket']['reviewed_by'], self.admin.pk)
        self.assertEqual(body['sync']['mistakes_added'], 1)

        mushaf = PersonalMushaf.objects.get(student=self.student)
        self.assertEqual(len(mushaf.mistakes), 1)
        self.assertEqual(mushaf.mistakes[0]['workflow_step'], 'sabq')
        self.assertEqual(mushaf.mistakes[0]['marked_by'], self.teacher.pk)

    def test_student_cannot_open_ticket(self) -> None:
        self.login(self.student)
        response = self.post(
            'tickets', {'student_id': self.student.pk, 'workflow_step': 'sabq'}
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['code'], 'forbidden')

    def test_open_with_bad_step(self) -> None:
        self.login(self.admin)
        response = self.post(
            'tickets', {'student_id': self.student.pk, 'workflow_step': 'tilawa'}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')
        self.assertFalse(Ticket.objects.exists())

    def test_remove_mistake_with_bad_index(self) -> None:
        ticket_id = self.started_ticket()

        response = self.client.delete(
            reverse('ticket_mistakes', kwargs={'ticket_id': ticket_id}),
            data=json.dumps({'index': 3}),
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_remove_mistake(self) -> None:
        ticket_id = self.started_ticket()
        self.post('ticket_mistakes', MADD, ticket_id=ticket_id)

        response = self.client.delete(
            reverse('ticket_mistakes', kwargs={'ticket_id': ticket_id}),
            data=json.dumps({'index': 0}),
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['ticket']['mistakes'], [])

    def test_heartbeat_from_other_teacher_is_forbidden(self) -> None:
        ticket_id = self.started_ticket()
        self.login(self.teacher2)

        response = self.post('ticket_heartbeat', ticket_id=ticket_id)

        self.assertEqual(response.status_code, 403)

    def test_approving_pending_ticket_reports_state(self) -> None:
        ticket_id = self.open_ticket()

        response = self.post('approve_ticket', ticket_id=ticket_id)

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body['code'], 'invalid_state')
        self.assertEqual(body['current_status'], 'pending')

    def test_reassign_and_close(self) -> None:
        ticket_id = self.started_ticket()
        self.post('ticket_mistakes', MADD, ticket_id=ticket_id)

        self.login(self.admin)
        response = self.post(
            'reassign_ticket',
            {'new_teacher_id': self.teacher2.pk, 'reason': 'Teacher unavailable'},
            ticket_id=ticket_id,
        )
        self.assertEqual(response.status_code, 200)
        ticket = response.json()['ticket']
        self.assertEqual(ticket['status'], 'reassigned')
        self.assertEqual(ticket['teacher_id'], self.teacher2.pk)
        self.assertEqual(ticket['mistakes'], [])
        self.assertEqual(len(ticket['previous_mistakes']), 1)

        response = self.post('close_ticket', {'reason': 'Duplicate'}, ticket_id=ticket_id)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['ticket']['status'], 'closed')

    def test_recitation_history(self) -> None:
        ticket_id = self.started_ticket()
        self.post('ticket_mistakes', MADD, ticket_id=ticket_id)
        self.open_ticket('manzil')

        self.login(self.student)
        own = self.get('recitation_history', student_id=self.student.pk)
        self.assertEqual(own.status_code, 200)
        stats = own.json()['statistics']
        self.assertEqual((stats['total_sessions'], stats['total_mistakes']), (2, 1))
        self.assertEqual(stats['by_workflow_step']['manzil'], {'total': 1, 'mistakes': 0})

        self.login(self.other_student)
        other = self.get('recitation_history', student_id=self.student.pk)
        self.assertEqual(other.status_code, 403)

    def test_unknown_ticket(self) -> None:
        self.login(self.admin)
        response = self.get('ticket_detail', ticket_id=999)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['code'], 'not_found')

    def test_invalid_json_body(self) -> None:
        self.login(self.admin)
        response = self.client.post(
            reverse('tickets'), data='{not json', content_type='application/json'
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_students_see_only_their_tickets(self) -> None:
        self.open_ticket()
        self.login(self.other_student)

        response = self.get('tickets')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['tickets'], [])


class MushafApiTest(ApiTestCase):
    def add(self, data: Dict[str, Any]):
        return self.post('mushaf_mistakes', data, student_id=self.student.pk)

    def test_add_twice_resolve_and_recur(self) -> None:
        self.login(self.teacher)
        mark = {**MADD, 'workflow_step': 'sabqi'}

        first = self.add(mark)
        second = self.add(mark)

        self.assertEqual(first.status_code, 201)
        record = second.json()['mistake']
        self.assertEqual(record['id'], first.json()['mistake']['id'])
        self.assertEqual(record['timeline']['repeat_count'], 2)

        response = self.post(
            'resolve_mushaf_mistake', student_id=self.student.pk, mistake_id=record['id']
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['mistake']['timeline']['resolved'])

        recurred = self.add(mark).json()['mistake']
        self.assertFalse(recurred['timeline']['resolved'])
        self.assertEqual(recurred['timeline']['repeat_count'], 3)

    def test_marked_by_in_body_is_ignored(self) -> None:
        self.login(self.teacher)

        response = self.add(
            {**MADD, 'workflow_step': 'sabq', 'marked_by': self.teacher2.pk}
        )

        self.assertEqual(response.status_code, 201)
        record = response.json()['mistake']
        self.assertEqual(record['marked_by'], self.teacher.pk)
        self.assertEqual(record['marked_by_name'], 'Teacher1')

    def test_batch_add(self) -> None:
        self.login(self.teacher)
        step = {'workflow_step': 'manzil'}

        response = self.add(
            {'mistakes': [{**MADD, **step}, {**MADD, **step}, {**MADD, **step, 'ayah': 4}]}
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual((body['added'], body['updated']), (2, 1))

    def test_resolve_unknown_record(self) -> None:
        self.login(self.teacher)
        self.add({**MADD, 'workflow_step': 'sabq'})

        response = self.post(
            'resolve_mushaf_mistake', student_id=self.student.pk, mistake_id='nope'
        )

        self.assertEqual(response.status_code, 404)

    def test_filter_and_statistics(self) -> None:
        self.login(self.teacher)
        self.add({**MADD, 'workflow_step': 'sabq'})
        self.add({**MADD, 'workflow_step': 'sabq', 'type': 'ikhfa'})
        self.add({**MADD, 'workflow_step': 'manzil', 'category': 'memory', 'type': 'memory'})

        response = self.post(
            'filter_mushaf', {'workflow_step': 'sabq'}, student_id=self.student.pk
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(sorted(m['type'] for m in body['mistakes']), ['ikhfa', 'madd'])
        self.assertEqual(body['statistics']['total'], 2)

        stats = self.get('mushaf_statistics', student_id=self.student.pk).json()
        self.assertEqual(stats['total'], 3)
        self.assertEqual(stats['by_workflow_step'], {'sabq': 2, 'sabqi': 0, 'manzil': 1})
        self.assertEqual(stats['by_category'], {'tajweed': 2, 'memory': 1})
        self.assertEqual(len(stats['trend']), 1)

        display = self.get('mushaf_display', student_id=self.student.pk).json()
        self.assertEqual({m['recency'] for m in display['mistakes']}, {'today'})

        by_date = self.get('mushaf_by_date', student_id=self.student.pk).json()
        self.assertEqual(sum(len(v) for v in by_date['dates'].values()), 3)

    def test_invalid_filter(self) -> None:
        self.login(self.teacher)

        response = self.post(
            'filter_mushaf', {'recency': 'someday'}, student_id=self.student.pk
        )

        self.assertEqual(response.status_code, 400)
        self.assertTrue(response.json()['details'])

    def test_student_reads_own_mushaf_only(self) -> None:
        self.login(self.student)

        own = self.get('mushaf', student_id=self.student.pk)
        other = self.get('mushaf', student_id=self.other_student.pk)

        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json()['mistakes'], [])
        self.assertEqual(other.status_code, 403)

    def test_student_cannot_write(self) -> None:
        self.login(self.student)

        response = self.add({**MADD, 'workflow_step': 'sabq'})

        self.assertEqual(response.status_code, 403)
        self.assertFalse(PersonalMushaf.objects.exists())

    def test_mushaf_of_non_student(self) -> None:
        self.login(self.admin)

        response = self.get('mushaf', student_id=self.teacher.pk)

        self.assertEqual(response.status_code, 404)

    def test_mistake_types_catalog(self) -> None:
        self.login(self.student)

        response = self.get('mistake_types')

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertIn('madd', [t['value'] for t in body['types']])
        self.assertIn('tajweed', [c['value'] for c in body['categories']])

    def test_mistake_types_by_category(self) -> None:
        self.login(self.teacher)

        letters = self.client.get(reverse('mistake_types'), {'category': 'letter'})
        unknown = self.client.get(reverse('mistake_types'), {'category': 'grammar'})

        self.assertEqual(
            {t['category'] for t in letters.json()['types']}, {'letter'}
        )
        self.assertEqual(unknown.status_code, 400)


class ApiErrorMiddlewareTest(TestCase):
    """Exception mapping outside the view stack."""

    def setUp(self) -> None:
        self.middleware = ApiErrorMiddleware(lambda request: HttpResponse())
        self.request = RequestFactory().post('/api/tickets/1/heartbeat/')

    def test_ratelimited_maps_to_429(self) -> None:
        response = self.middleware.process_exception(self.request, Ratelimited())

        self.assertEqual(response.status_code, 429)
        self.assertEqual(json.loads(response.content)['code'], 'rate_limited')

    def test_domain_error_keeps_context(self) -> None:
        response = self.middleware.process_exception(
            self.request, InvalidState("Ticket is closed.", current_status='closed')
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            json.loads(response.content),
            {'error': 'Ticket is closed.', 'code': 'invalid_state', 'current_status': 'closed'},
        )

    def test_other_errors_propagate(self) -> None:
        self.assertIsNone(
            self.middleware.process_exception(self.request, RuntimeError("boom"))
        )
