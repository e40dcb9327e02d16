import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Course',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(help_text="The Course's Name/Title.", max_length=255)),
                ('slug', models.SlugField(editable=False, help_text='Unique slug for URL purposes, auto-generated from title.', unique=True)),
                ('description', models.TextField(blank=True, help_text='Description of the course.')),
                ('duration', models.CharField(blank=True, help_text="Display label, e.g. '6 weeks'.", max_length=50)),
                ('price', models.PositiveIntegerField(default=0, help_text='Price in minor currency units. 0 marks a free course.', validators=[django.core.validators.MinValueValidator(0)])),
                ('category', models.CharField(blank=True, max_length=100)),
                ('tags', models.JSONField(blank=True, default=list, help_text='Topic tags matched against coach specialties.')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Course',
                'verbose_name_plural': 'Courses',
                'ordering': ['title'],
            },
        ),
    ]
