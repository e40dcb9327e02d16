from django.test import TestCase

from coaching_core.models import Course


class CourseModelTests(TestCase):
    def test_slug_is_generated_and_unique(self):
        first = Course.objects.create(title='Retirement Basics', price=50000)
        second = Course.objects.create(title='Retirement Basics', price=50000)

        self.assertEqual(first.slug, 'retirement-basics')
        self.assertEqual(second.slug, 'retirement-basics-2')

    def test_free_course(self):
        self.assertTrue(Course(title='Intro', price=0).is_free)
        self.assertFalse(Course(title='Deep Dive', price=100).is_free)

    def test_tag_set_is_normalised(self):
        course = Course(title='Tax', tags=['Tax Planning', ' tax planning ', '', 'GST'])
        self.assertEqual(course.tag_set(), {'tax planning', 'gst'})
