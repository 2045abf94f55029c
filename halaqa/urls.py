"""
halaqa.urls module.

Root URL configuration: Django admin plus the recitation JSON API.
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('recitation.urls')),
]
