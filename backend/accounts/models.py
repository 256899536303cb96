from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Platform user; one account acts either as a client or as a provider"""
    ROLE_CHOICES = [
        ('client', 'Client'),
        ('provider', 'Service Provider'),
    ]

    role = models.CharField(max_length=10, choices=ROLE_CHOICES)
    phone_number = models.CharField(max_length=20, blank=True)
    completed_services = models.IntegerField(default=0)

    class Meta:
        db_table = 'users'

    @property
    def is_provider(self) -> bool:
        return self.role == 'provider'

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"
