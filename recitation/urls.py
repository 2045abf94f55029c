"""
recitation.urls module.

URL configuration for the recitation API (mounted under ``/api/``).
"""

from django.urls import path

from . import views

urlpatterns = [
    # Tickets
    path('tickets/', views.tickets, name='tickets'),
    path('tickets/pending-review/', views.pending_review, name='pending_review'),
    path('tickets/<int:ticket_id>/', views.ticket_detail, name='ticket_detail'),
    path('tickets/<int:ticket_id>/start/', views.start_ticket, name='start_ticket'),
    path('tickets/<int:ticket_id>/heartbeat/', views.heartbeat, name='ticket_heartbeat'),
    path('tickets/<int:ticket_id>/pause/', views.pause_ticket, name='pause_ticket'),
    path('tickets/<int:ticket_id>/resume/', views.resume_ticket, name='resume_ticket'),
    path('tickets/<int:ticket_id>/notes/', views.session_notes, name='ticket_session_notes'),
    path(
        'tickets/<int:ticket_id>/mistakes/',
        views.ticket_mistakes,
        name='ticket_mistakes',
    ),
    path('tickets/<int:ticket_id>/submit/', views.submit_ticket, name='submit_ticket'),
    # Second review
    path('tickets/<int:ticket_id>/approve/', views.approve_ticket, name='approve_ticket'),
    path('tickets/<int:ticket_id>/reject/', views.reject_ticket, name='reject_ticket'),
    path(
        'tickets/<int:ticket_id>/reassign/',
        views.reassign_ticket,
        name='reassign_ticket',
    ),
    path('tickets/<int:ticket_id>/close/', views.close_ticket, name='close_ticket'),
    path(
        'students/<int:student_id>/recitation-history/',
        views.recitation_history,
        name='recitation_history',
    ),
    # Personal Mushaf
    path('students/<int:student_id>/mushaf/', views.mushaf, name='mushaf'),
    path(
        'students/<int:student_id>/mushaf/display/',
        views.mushaf_display,
        name='mushaf_display',
    ),
    path(
        'students/<int:student_id>/mushaf/by-date/',
        views.mushaf_by_date,
        name='mushaf_by_date',
    ),
    path(
        'students/<int:student_id>/mushaf/mistakes/',
        views.mushaf_mistakes,
        name='mushaf_mistakes',
    ),
    path(
        'students/<int:student_id>/mushaf/mistakes/<str:mistake_id>/resolve/',
        views.resolve_mushaf_mistake,
        name='resolve_mushaf_mistake',
    ),
    path(
        'students/<int:student_id>/mushaf/filter/',
        views.filter_mushaf,
        name='filter_mushaf',
    ),
    path(
        'students/<int:student_id>/mushaf/statistics/',
        views.mushaf_statistics,
        name='mushaf_statistics',
    ),
    # Catalog
    path('mistake-types/', views.mistake_types, name='mistake_types'),
]
