"""
URL configuration for bulk assignment endpoints.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('agents/', views.list_agents, name='list_agents'),
    path('stages/', views.list_stages, name='list_stages'),

    # Bulk assignment
    path('bulk-assign/preview/', views.preview_bulk_assign, name='preview_bulk_assign'),
    path('bulk-assign/', views.bulk_assign, name='bulk_assign'),
    path('bulk-unassign/', views.bulk_unassign, name='bulk_unassign'),
]
