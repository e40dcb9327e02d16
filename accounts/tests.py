from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase

from accounts.models import CoachProfile, UserType
from accounts.services import CoachDirectory, normalise_tags

User = get_user_model()


class UserModelTests(TestCase):
    def test_new_users_are_individuals(self):
        user = User.objects.create_user(username='client', email='client@example.com')
        self.assertEqual(user.user_type, UserType.INDIVIDUAL)
        self.assertFalse(user.is_employee)

    def test_manager_helpers(self):
        User.objects.create_user(username='coach', is_coach=True)
        User.objects.create_user(username='staff', user_type=UserType.EMPLOYEE)
        User.objects.create_user(username='client')

        self.assertEqual(list(User.objects.get_coaches().values_list('username', flat=True)), ['coach'])
        self.assertEqual(list(User.objects.get_employees().values_list('username', flat=True)), ['staff'])


class CoachDirectoryTests(TestCase):
    def setUp(self):
        self.directory = CoachDirectory()
        self.tax = self._coach('tax', ['Tax Planning', 'Retirement'], '4.20')
        self.invest = self._coach('invest', ['investing', ' Retirement '], '4.90')
        self.budget = self._coach('budget', ['Budgeting'], '3.50')

    def _coach(self, username, specialties, rating, **user_fields):
        user = User.objects.create_user(
            username=username,
            email=f'{username}@example.com',
            first_name=username.title(),
            is_coach=True,
            **user_fields
        )
        return CoachProfile.objects.create(user=user, specialties=specialties, rating=Decimal(rating))

    def test_lists_coaches_by_rating(self):
        self.assertEqual(self.directory.list_coaches(), [self.invest, self.tax, self.budget])

    def test_skips_unavailable_and_inactive_coaches(self):
        self.budget.is_available_for_new_clients = False
        self.budget.save()
        self.tax.user.is_active = False
        self.tax.user.save()

        self.assertEqual(self.directory.list_coaches(), [self.invest])

    def test_specialty_filter_is_case_insensitive_overlap(self):
        coaches = self.directory.list_coaches({'specialties': ['RETIREMENT']})
        self.assertEqual(coaches, [self.invest, self.tax])

        self.assertEqual(self.directory.list_coaches({'specialties': ['astrology']}), [])

    def test_min_rating_filter(self):
        coaches = self.directory.list_coaches({'min_rating': Decimal('4.0')})
        self.assertEqual(coaches, [self.invest, self.tax])

    def test_name_falls_back_to_username(self):
        user = User.objects.create_user(username='nameless', is_coach=True)
        coach = CoachProfile.objects.create(user=user)
        self.assertEqual(coach.name, 'nameless')

    def test_normalise_tags(self):
        self.assertEqual(normalise_tags([' Tax ', 'tax', '', None, 'Retirement']), {'tax', 'retirement'})
        self.assertEqual(normalise_tags(None), set())
