"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    AppendOnlyMixin: Rows may be inserted but never updated or deleted

Usage:
    from core.models import BaseModel
    from core.model_mixins import AppendOnlyMixin, UUIDPrimaryKeyMixin

    class AuditEntry(UUIDPrimaryKeyMixin, AppendOnlyMixin, BaseModel):
        event = models.CharField(max_length=50)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models

from core.exceptions import ConflictError


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use a UUID primary key instead of an auto-increment integer.

    Ids are non-guessable and can be generated before the insert, which lets
    the engine derive idempotency keys and Stripe transfer groups from a
    booking id before anything is written.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class AppendOnlyMixin(models.Model):
    """
    Make a model insert-only.

    ``save()`` on an existing row and ``delete()`` both raise ConflictError.
    Used for money history (audit entries, refund transactions, premium
    events) where the row is the durable record for dispute resolution.

    Note:
        QuerySet.update() and QuerySet.delete() bypass model methods; the
        engine never calls them on append-only models.
    """

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ConflictError(
                f"{self.__class__.__name__} records are immutable",
                error_code="IMMUTABLE_RECORD",
                details={"pk": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ConflictError(
            f"{self.__class__.__name__} records cannot be deleted",
            error_code="IMMUTABLE_RECORD",
            details={"pk": str(self.pk)},
        )
