"""
Charitrace URL Configuration

This module maps the JSON API of the Charitrace application to its view
functions. The project mounts it under /api/.

URL Pattern Organization:
- Accounts (register, login, logout, profile)
- Charities and projects
- Donations and Stripe payment flows
- Blockchain verification (per donation and administrative)
- Platform statistics
"""

from django.urls import path

from . import views

urlpatterns = [
    # Accounts
    path('auth/register/', views.register, name='register'),
    path('auth/login/', views.login_view, name='login'),
    path('auth/logout/', views.logout_view, name='logout'),
    path('auth/profile/', views.profile, name='profile'),

    # Charities
    path('charities/', views.charities, name='charities'),
    path('charities/categories/', views.charity_categories, name='charity_categories'),
    path('charities/<int:charity_id>/', views.charity_detail, name='charity_detail'),
    path('charities/<int:charity_id>/flow/', views.charity_flow, name='charity_flow'),
    path('charities/<int:charity_id>/donation-stats/', views.charity_donation_stats, name='charity_donation_stats'),

    # Projects
    path('projects/', views.projects, name='projects'),
    path('projects/statuses/', views.project_statuses, name='project_statuses'),
    path('projects/<int:project_id>/', views.project_detail, name='project_detail'),

    # Donations and payments
    path('donations/create-payment-intent/', views.create_payment_intent, name='create_payment_intent'),
    path('donations/confirm-payment/', views.confirm_payment, name='confirm_payment'),
    path('donations/webhook/', views.stripe_webhook, name='stripe_webhook'),
    path('donations/history/', views.donation_history, name='donation_history'),
    path('donations/dashboard-stats/', views.donor_dashboard_stats, name='donor_dashboard_stats'),
    path('donations/<int:donation_id>/', views.donation_detail, name='donation_detail'),
    path('donations/<int:donation_id>/verify/', views.verify_donation, name='verify_donation'),
    path('donations/<int:donation_id>/verification/', views.donation_verification, name='donation_verification'),

    # Blockchain verification administration
    path('verification/stats/', views.verification_stats, name='verification_stats'),
    path('verification/unverified/', views.unverified_donations, name='unverified_donations'),
    path('verification/retry/', views.retry_verifications, name='retry_verifications'),
    path('verification/batch/', views.batch_verify, name='batch_verify'),
    path('verification/chain/<str:transaction_id>/', views.chain_donation, name='chain_donation'),

    # Statistics
    path('stats/homepage/', views.homepage_stats, name='homepage_stats'),
    path('stats/donor/<int:donor_id>/', views.donor_stats, name='donor_stats'),
]
