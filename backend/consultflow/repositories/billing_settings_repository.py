"""
Billing Settings Repository for Consultflow

Lookups for the three scopes of billing terms (booking override, client
override, practitioner default) plus lazy creation of the default.
"""

from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BillingCadence
from ..core.exceptions import RepositoryException
from ..models.billing_settings import BillingSettings
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BillingSettingsRepository(BaseRepository[BillingSettings]):
    def __init__(self, db: Session):
        super().__init__(db, BillingSettings)
        self.logger = logging.getLogger(__name__)

    def get_for_client(self, practitioner_id: str, client_id: str) -> Optional[BillingSettings]:
        """Most recent client-scoped terms (ignores booking overrides)."""
        query = (
            self.db.query(BillingSettings)
            .filter(
                BillingSettings.practitioner_id == practitioner_id,
                BillingSettings.client_id == client_id,
                BillingSettings.booking_id.is_(None),
            )
            .order_by(BillingSettings.created_at.desc())
        )
        return self._execute_first(query)

    def get_practitioner_default(self, practitioner_id: str) -> Optional[BillingSettings]:
        query = self.db.query(BillingSettings).filter(
            BillingSettings.practitioner_id == practitioner_id,
            BillingSettings.client_id.is_(None),
            BillingSettings.booking_id.is_(None),
            BillingSettings.is_default.is_(True),
        )
        return self._execute_first(query)

    def get_or_create_practitioner_default(
        self, practitioner_id: str, currency: str
    ) -> BillingSettings:
        """
        Return the practitioner default, creating a zero-amount one when missing.

        The insert runs inside a savepoint; losing a race against a concurrent
        creator trips the partial unique index and the winner's row is returned.
        """
        existing = self.get_practitioner_default(practitioner_id)
        if existing is not None:
            return existing

        try:
            with self.db.begin_nested():
                created = BillingSettings(
                    practitioner_id=practitioner_id,
                    client_id=None,
                    booking_id=None,
                    is_default=True,
                    billing_type=BillingCadence.PER_BOOKING.value,
                    consultation_price=Decimal("0.00"),
                    currency=currency,
                )
                self.db.add(created)
                self.db.flush()
            return created
        except IntegrityError:
            self.logger.info(
                "Default billing settings already created concurrently for practitioner %s",
                practitioner_id,
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to create default billing settings: {str(e)}")
            raise RepositoryException(f"Failed to create default billing settings: {str(e)}")

        winner = self.get_practitioner_default(practitioner_id)
        if winner is None:
            raise RepositoryException(
                f"Default billing settings missing after concurrent create for {practitioner_id}"
            )
        return winner

    def get_vat_rate(self, practitioner_id: str, client_id: str) -> Optional[Decimal]:
        """Client VAT rate, else practitioner default VAT rate, else None."""
        client_terms = self.get_for_client(practitioner_id, client_id)
        if client_terms is not None and client_terms.vat_rate_percent is not None:
            return Decimal(client_terms.vat_rate_percent)
        default_terms = self.get_practitioner_default(practitioner_id)
        if default_terms is not None and default_terms.vat_rate_percent is not None:
            return Decimal(default_terms.vat_rate_percent)
        return None
