"""
Assignment Models - retention agents, the leads they work, and who owns which lead.
"""

from django.db import models
from django.contrib.auth.models import User
import uuid


class Agent(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        help_text="Associated Django user (optional)"
    )
    display_name = models.CharField(
        max_length=255,
        blank=True,
        help_text="Name shown to managers in the assignment screens"
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether agent can receive new leads"
    )

    # VICIdial mapping
    vicidial_user = models.CharField(
        max_length=50,
        blank=True,
        help_text="VICIdial user the agent logs in as"
    )
    vicidial_campaign_id = models.CharField(
        max_length=50,
        blank=True,
        help_text="Campaign assigned leads are pushed into (falls back to the default)"
    )
    vicidial_list_id = models.CharField(
        max_length=50,
        blank=True,
        help_text="List assigned leads are pushed into (falls back to the default)"
    )

    # Metadata
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['display_name', 'id']

    def __str__(self):
        return f"{self.id} ({self.display_name or 'unnamed'})"


class Lead(models.Model):
    """
    A deal being worked for retention.

    Stage is the GHL pipeline stage the manager filters on when bulk assigning.
    """

    deal_id = models.CharField(
        max_length=100,
        unique=True,
        help_text="External deal identifier (Monday item id)"
    )

    customer_name = models.CharField(
        max_length=255,
        blank=True,
    )
    phone_number = models.CharField(
        max_length=20,
        blank=True,
        db_index=True,
    )
    carrier = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
    )
    stage = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="GHL stage"
    )

    is_active = models.BooleanField(default=True)
    last_updated = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last time the deal changed upstream; newest leads are assigned first"
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
    )

    # Timing
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-last_updated', '-id']

    def __str__(self):
        return f"{self.deal_id}: {self.customer_name} ({self.phone_number})"


class LeadAssignment(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('unassigned', 'Unassigned'),
    ]

    assignment_id = models.UUIDField(
        default=uuid.uuid4,
        unique=True,
        editable=False,
    )

    lead = models.ForeignKey(
        Lead,
        on_delete=models.CASCADE,
        related_name='assignments',
    )
    assignee = models.ForeignKey(
        Agent,
        on_delete=models.CASCADE,
        related_name='assignments',
        help_text="Agent working the lead"
    )
    assigned_by = models.ForeignKey(
        Agent,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assignments_made',
        help_text="Manager who made the assignment"
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='active',
        db_index=True
    )
    assigned_at = models.DateTimeField()
    unassigned_at = models.DateTimeField(null=True, blank=True)

    # VICIdial mirror
    vicidial_lead_id = models.PositiveBigIntegerField(null=True, blank=True)
    vicidial_synced_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-assigned_at']
        constraints = [
            models.UniqueConstraint(
                fields=['lead'],
                condition=models.Q(status='active'),
                name='unique_active_assignment_per_lead',
            ),
        ]

    def __str__(self):
        return f"{self.lead_id} -> {self.assignee_id} ({self.status})"
