from django.contrib import admin
from unfold.admin import ModelAdmin

from .models import Course


@admin.register(Course)
class CourseAdmin(ModelAdmin):
    list_display = ('title', 'category', 'price_display', 'duration', 'is_active')
    list_filter = ('is_active', 'category')
    search_fields = ['title', 'description']
    readonly_fields = ('slug', 'created_at', 'updated_at')

    @admin.display(description='Price', ordering='price')
    def price_display(self, obj):
        if obj.is_free:
            return "Free"
        return f"{obj.price / 100:.2f}"
