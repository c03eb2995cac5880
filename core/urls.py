"""
Charitrace Project URL Configuration

Root URL dispatcher of the Charitrace Django project.

URL Structure:
- /admin/ - Django administrative interface
- /api/ - JSON API handled by the charitrace application

For more information on Django URL configuration:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    # Django admin interface for site administration
    path('admin/', admin.site.urls),

    # JSON API
    path('api/', include('charitrace.urls')),
]
