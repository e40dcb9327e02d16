from django.db import models
from django.core.validators import MinValueValidator
from django.utils.text import slugify


class Course(models.Model):
    """
    A coaching course a client can enroll in. Prices are held in minor
    currency units (paise/pence) so amounts never go through floats.
    """
    title = models.CharField(
        max_length=255,
        help_text="The Course's Name/Title."
    )
    slug = models.SlugField(
        unique=True,
        editable=False,
        help_text="Unique slug for URL purposes, auto-generated from title."
    )
    description = models.TextField(
        blank=True,
        help_text="Description of the course."
    )
    duration = models.CharField(
        max_length=50,
        blank=True,
        help_text="Display label, e.g. '6 weeks'."
    )
    price = models.PositiveIntegerField(
        default=0,
        validators=[MinValueValidator(0)],
        help_text="Price in minor currency units. 0 marks a free course."
    )
    category = models.CharField(max_length=100, blank=True)
    tags = models.JSONField(
        default=list,
        blank=True,
        help_text="Topic tags matched against coach specialties."
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['title']
        verbose_name = "Course"
        verbose_name_plural = "Courses"

    def __str__(self):
        return self.title

    def save(self, *args, **kwargs):
        if not self.slug:
            base = slugify(self.title) or 'course'
            slug = base
            suffix = 2
            while Course.objects.filter(slug=slug).exclude(pk=self.pk).exists():
                slug = f"{base}-{suffix}"
                suffix += 1
            self.slug = slug
        super().save(*args, **kwargs)

    @property
    def is_free(self):
        return self.price == 0

    def tag_set(self):
        return {t.strip().lower() for t in (self.tags or []) if t and t.strip()}
