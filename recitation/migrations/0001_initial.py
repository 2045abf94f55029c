import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='MemberProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('student', 'Student'), ('teacher', 'Teacher'), ('admin', 'Admin'), ('super_admin', 'Super admin')], default='student', max_length=20)),
                ('extra_permissions', models.JSONField(blank=True, default=list, help_text="Actions granted on top of the role, e.g. ['tickets.approve']")),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(help_text='Associated user account', on_delete=django.db.models.deletion.CASCADE, related_name='member_profile', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Member Profile',
                'verbose_name_plural': 'Member Profiles',
            },
        ),
        migrations.CreateModel(
            name='PersonalMushaf',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('student_name', models.CharField(blank=True, default='', max_length=150)),
                ('mistakes', models.JSONField(blank=True, default=list)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('student', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='personal_mushaf', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Personal Mushaf',
                'verbose_name_plural': 'Personal Mushafs',
            },
        ),
        migrations.CreateModel(
            name='Ticket',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('assignment_id', models.PositiveBigIntegerField(blank=True, null=True)),
                ('workflow_step', models.CharField(choices=[('sabq', 'Sabq (new lesson)'), ('sabqi', 'Sabqi (recent revision)'), ('manzil', 'Manzil (long-term revision)')], max_length=10)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('in-progress', 'In progress'), ('paused', 'Paused'), ('submitted', 'Submitted'), ('approved', 'Approved'), ('rejected', 'Rejected'), ('reassigned', 'Reassigned'), ('closed', 'Closed')], default='pending', max_length=20)),
                ('from_surah', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('from_ayah', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('to_surah', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('to_ayah', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('range_locked', models.BooleanField(default=False)),
                ('mistakes', models.JSONField(blank=True, default=list)),
                ('notes', models.TextField(blank=True, default='')),
                ('session_notes', models.TextField(blank=True, default='')),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('last_heartbeat_at', models.DateTimeField(blank=True, null=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('listening_duration_seconds', models.PositiveIntegerField(blank=True, null=True)),
                ('reviewed_at', models.DateTimeField(blank=True, null=True)),
                ('review_notes', models.TextField(blank=True, default='')),
                ('reassigned_from_teacher_id', models.PositiveBigIntegerField(blank=True, null=True)),
                ('reassigned_from_teacher_name', models.CharField(blank=True, default='', max_length=150)),
                ('reassigned_to_teacher_id', models.PositiveBigIntegerField(blank=True, null=True)),
                ('reassigned_to_teacher_name', models.CharField(blank=True, default='', max_length=150)),
                ('reassignment_reason', models.TextField(blank=True, default='')),
                ('reassigned_at', models.DateTimeField(blank=True, null=True)),
                ('previous_teacher_comment', models.TextField(blank=True, default='')),
                ('previous_mistakes', models.JSONField(blank=True, default=list)),
                ('reassignment_history', models.JSONField(blank=True, default=list)),
                ('closed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('reviewed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='reviewed_tickets', to=settings.AUTH_USER_MODEL)),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='recitation_tickets', to=settings.AUTH_USER_MODEL)),
                ('teacher', models.ForeignKey(blank=True, help_text='Teacher holding the listening session', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='teaching_tickets', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Ticket',
                'verbose_name_plural': 'Tickets',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['student', 'workflow_step', 'status'], name='ticket_student_step_status'),
                    models.Index(fields=['teacher', 'status'], name='ticket_teacher_status'),
                    models.Index(fields=['status', 'submitted_at'], name='ticket_status_submitted'),
                ],
            },
        ),
    ]
