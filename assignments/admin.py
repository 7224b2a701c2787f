from django.contrib import admin
from .models import Agent, Lead, LeadAssignment

# Inline for assignments in Agent admin
class LeadAssignmentInline(admin.TabularInline):
    model = LeadAssignment
    fk_name = 'assignee'
    extra = 0
    readonly_fields = ('assignment_id', 'lead', 'status', 'assigned_at', 'unassigned_at')
    fields = ('assignment_id', 'lead', 'status', 'assigned_at', 'unassigned_at')

    def has_add_permission(self, request, obj=None):
        return False

# Admin for Agent
@admin.register(Agent)
class AgentAdmin(admin.ModelAdmin):
    list_display = ('id', 'display_name', 'vicidial_user', 'is_active', 'created_at')
    list_filter = ('is_active', 'created_at')
    search_fields = ('display_name', 'vicidial_user')
    inlines = [LeadAssignmentInline]

# Admin for Lead
@admin.register(Lead)
class LeadAdmin(admin.ModelAdmin):
    list_display = ('deal_id', 'customer_name', 'phone_number', 'carrier', 'stage', 'is_active', 'last_updated')
    list_filter = ('is_active', 'stage', 'carrier')
    search_fields = ('deal_id', 'customer_name', 'phone_number')
    fieldsets = (
        ('Basic Information', {
            'fields': ('deal_id', 'customer_name', 'phone_number', 'carrier')
        }),
        ('Pipeline', {
            'fields': ('stage', 'is_active', 'last_updated')
        }),
        ('Metadata', {
            'fields': ('metadata',)
        }),
    )

# Admin for LeadAssignment
@admin.register(LeadAssignment)
class LeadAssignmentAdmin(admin.ModelAdmin):
    list_display = ('assignment_id', 'lead', 'assignee', 'status', 'assigned_at', 'vicidial_lead_id')
    list_filter = ('status', 'assignee', 'assigned_at')
    search_fields = ('lead__deal_id', 'lead__phone_number', 'assignee__display_name')
    readonly_fields = ('assignment_id', 'unassigned_at', 'vicidial_lead_id', 'vicidial_synced_at')
    date_hierarchy = 'assigned_at'
