"""
Optimistic customer state changes.
The cached entry flips first, the remote upsert follows, and a failed upsert restores the entry.
"""
import logging

from client import CustomerUpsert
from engine import DEFAULT_COUNTRY_CODE, get_customer_id
from errors import CustomerApiError

logger = logging.getLogger(__name__)


def build_upsert(customer, active, store_id=None):
    """Upsert payload for a customer with a new active flag.

    The endpoint replaces the record, so every required field is resent.
    """
    stores = customer.get('stores')
    if not isinstance(stores, list) or not stores:
        stores = [store_id] if store_id else []
    return CustomerUpsert(
        phoneNumber=str(customer.get('phoneNumber') or ''),
        firstName=customer.get('firstName'),
        countryCode=str(customer.get('countryCode') or '') or DEFAULT_COUNTRY_CODE,
        stores=stores,
        active=active,
    )


class MutationGateway:
    def __init__(self, client, cache, store_id):
        self.client = client
        self.cache = cache
        self.store_id = store_id

    async def set_active(self, customer, active):
        """Set one customer's active flag. Returns an outcome dict; remote errors never raise."""
        customer_id = get_customer_id(customer)
        previous = self.cache.set_active(self.store_id, customer_id, active)
        try:
            saved = await self.client.upsert_customer(build_upsert(customer, active, self.store_id))
        except CustomerApiError as e:
            self.cache.restore(self.store_id, customer_id, previous)
            logger.warning(f"Could not set active={active} for customer {customer_id} "
                           f"({e.status_code or 'error'}): {e.detail or e.message}")
            return {'ok': False, 'customer_id': customer_id, 'error': e.message, 'status_code': e.status_code}
        except Exception as e:
            self.cache.restore(self.store_id, customer_id, previous)
            logger.error(f"Unexpected failure setting active={active} for customer {customer_id}: {e}", exc_info=True)
            return {'ok': False, 'customer_id': customer_id, 'error': str(e) or type(e).__name__, 'status_code': None}
        finally:
            self.cache.invalidate(self.store_id)
        return {'ok': True, 'customer_id': customer_id, 'customer': saved}
