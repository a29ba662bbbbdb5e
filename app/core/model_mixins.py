"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedModelMixin: Optimistic concurrency via an auto-incremented version

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin

    class PaymentFailure(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
        failure_reason = models.TextField(blank=True)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models
from django.db.models import F

if TYPE_CHECKING:
    from typing import Any


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    IDs are non-guessable and can be handed to API clients without
    revealing record counts.

    Fields:
        id: UUIDField as primary key (auto-generated)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class VersionedModelMixin(models.Model):
    """
    Optimistic locking support.

    Every save of an existing row increments ``version`` atomically in the
    database (``F("version") + 1``) and reloads the new value afterwards.
    Writers that need compare-and-swap semantics filter on the version they
    read (see billing.locks.check_version and the retry scheduler claim).

    Fields:
        version: Monotonic counter, starts at 1

    Usage:
        sub = Subscription.objects.get(pk=pk)
        sub.tier = "premium"
        sub.save()          # version 1 -> 2
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Optimistic locking version, incremented on every save",
    )

    class Meta:
        abstract = True

    def save(self, *args: Any, **kwargs: Any) -> None:
        is_update = self.pk and not kwargs.get("force_insert", False)
        if is_update and not self._state.adding:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None and "version" not in update_fields:
                kwargs["update_fields"] = [*update_fields, "version"]

        super().save(*args, **kwargs)

        if not isinstance(self.version, int):
            self.refresh_from_db(fields=["version"])
