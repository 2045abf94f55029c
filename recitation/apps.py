"""recitation.apps module.

Django application configuration for the *recitation* app used by the
**halaqa** project.
"""

from django.apps import AppConfig


class RecitationConfig(AppConfig):
    """Django ``AppConfig`` for the **recitation** application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'recitation'
    verbose_name = 'Recitation review'
