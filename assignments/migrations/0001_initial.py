import uuid

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
            name='Agent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('display_name', models.CharField(blank=True, help_text='Name shown to managers in the assignment screens', max_length=255)),
                ('is_active', models.BooleanField(default=True, help_text='Whether agent can receive new leads')),
                ('vicidial_user', models.CharField(blank=True, help_text='VICIdial user the agent logs in as', max_length=50)),
                ('vicidial_campaign_id', models.CharField(blank=True, help_text='Campaign assigned leads are pushed into (falls back to the default)', max_length=50)),
                ('vicidial_list_id', models.CharField(blank=True, help_text='List assigned leads are pushed into (falls back to the default)', max_length=50)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(blank=True, help_text='Associated Django user (optional)', null=True, on_delete=django.db.models.deletion.CASCADE, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['display_name', 'id'],
            },
        ),
        migrations.CreateModel(
            name='Lead',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('deal_id', models.CharField(help_text='External deal identifier (Monday item id)', max_length=100, unique=True)),
                ('customer_name', models.CharField(blank=True, max_length=255)),
                ('phone_number', models.CharField(blank=True, db_index=True, max_length=20)),
                ('carrier', models.CharField(blank=True, db_index=True, max_length=100)),
                ('stage', models.CharField(blank=True, db_index=True, help_text='GHL stage', max_length=100)),
                ('is_active', models.BooleanField(default=True)),
                ('last_updated', models.DateTimeField(blank=True, help_text='Last time the deal changed upstream; newest leads are assigned first', null=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['-last_updated', '-id'],
            },
        ),
        migrations.CreateModel(
            name='LeadAssignment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('assignment_id', models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ('status', models.CharField(choices=[('active', 'Active'), ('unassigned', 'Unassigned')], db_index=True, default='active', max_length=20)),
                ('assigned_at', models.DateTimeField()),
                ('unassigned_at', models.DateTimeField(blank=True, null=True)),
                ('vicidial_lead_id', models.PositiveBigIntegerField(blank=True, null=True)),
                ('vicidial_synced_at', models.DateTimeField(blank=True, null=True)),
                ('assigned_by', models.ForeignKey(blank=True, help_text='Manager who made the assignment', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assignments_made', to='assignments.agent')),
                ('assignee', models.ForeignKey(help_text='Agent working the lead', on_delete=django.db.models.deletion.CASCADE, related_name='assignments', to='assignments.agent')),
                ('lead', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='assignments', to='assignments.lead')),
            ],
            options={
                'ordering': ['-assigned_at'],
                'constraints': [models.UniqueConstraint(condition=models.Q(('status', 'active')), fields=('lead',), name='unique_active_assignment_per_lead')],
            },
        ),
    ]
