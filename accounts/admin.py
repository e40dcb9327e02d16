from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from unfold.admin import ModelAdmin

from .models import User, CoachProfile

# --- INLINES ---

class CoachProfileInline(admin.StackedInline):
    model = CoachProfile
    can_delete = False
    verbose_name_plural = 'Coach Profile'
    fk_name = 'user'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('user')

# --- MODEL ADMINS ---

@admin.register(User)
class UserAdmin(BaseUserAdmin, ModelAdmin):
    inlines = (CoachProfileInline,)
    list_display = ('username', 'email', 'full_name_display', 'user_type', 'is_coach', 'date_joined')
    list_filter = BaseUserAdmin.list_filter + ('is_coach', 'user_type')
    search_fields = ('username', 'first_name', 'last_name', 'email')
    ordering = ('-date_joined',)
    list_select_related = ('coach_profile',)

    fieldsets = (
        (None, {'fields': ('username', 'password')}),
        ('Personal Info', {'fields': ('first_name', 'last_name', 'email')}),
        ('Permissions', {
            'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions'),
            'classes': ('collapse',),
        }),
        ('Roles & Status', {'fields': ('is_coach', 'user_type')}),
        ('Important Dates', {'fields': ('last_login', 'date_joined')}),
    )

    @admin.display(description='Full Name')
    def full_name_display(self, obj):
        return obj.get_full_name()


@admin.register(CoachProfile)
class CoachProfileAdmin(ModelAdmin):
    list_display = ('coach_name', 'rating', 'experience', 'specialties_display', 'is_available_for_new_clients')
    list_filter = ('is_available_for_new_clients',)
    search_fields = ('user__first_name', 'user__last_name', 'user__email')
    list_select_related = ('user',)

    @admin.display(description='Coach', ordering='user__last_name')
    def coach_name(self, obj):
        return obj.name

    @admin.display(description='Specialties')
    def specialties_display(self, obj):
        return ", ".join(obj.specialties or []) or "-"
