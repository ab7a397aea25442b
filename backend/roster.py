"""
Store roster: paginated fetch plus the in-process roster cache.
The cache is the only shared mutable state; writers touch one customer entry each.
"""
import logging

from engine import ROSTER_PAGE_SIZE, MAX_ROSTER_PAGES, get_customer_id, build_phone_index
from errors import CustomerApiError, RosterFetchError

logger = logging.getLogger(__name__)


async def fetch_all_customers(client, store_id, page_size=ROSTER_PAGE_SIZE, max_pages=MAX_ROSTER_PAGES):
    """Read every roster page for a store.

    Stops on a short page, once the reported total is reached, or after
    max_pages pages even if the backend keeps returning full pages.
    """
    customers = []
    page = 1
    while True:
        try:
            res = await client.get_customers_by_store(store_id, page, page_size)
        except CustomerApiError as e:
            raise RosterFetchError(f'Could not load customers for store {store_id} (page {page}): {e.message}',
                                   store_id=store_id, page=page, status_code=e.status_code) from e

        data = res.get('data') or []
        customers.extend(data)
        total = res.get('total')
        if len(data) < page_size:
            break
        if total is not None and len(customers) >= total:
            break
        if page >= max_pages:
            logger.warning(f"Roster for store {store_id} hit the {max_pages}-page cap with {len(customers)} records")
            break
        page += 1

    logger.info(f"Loaded {len(customers)} customers for store {store_id} in {page} page(s)")
    return customers


class RosterCache:
    """Per-store roster snapshots with id-keyed optimistic writes."""

    def __init__(self, client, page_size=ROSTER_PAGE_SIZE, max_pages=MAX_ROSTER_PAGES):
        self.client = client
        self.page_size = page_size
        self.max_pages = max_pages
        self._rosters = {}
        self._positions = {}
        self._stale = set()

    async def get(self, store_id):
        """Cached roster, refetched when missing or invalidated."""
        if store_id not in self._rosters or store_id in self._stale:
            await self.refresh(store_id)
        return self._rosters[store_id]

    async def refresh(self, store_id):
        customers = await fetch_all_customers(self.client, store_id, self.page_size, self.max_pages)
        self._rosters[store_id] = customers
        self._positions[store_id] = {get_customer_id(c): i for i, c in enumerate(customers) if get_customer_id(c)}
        self._stale.discard(store_id)
        return customers

    def peek(self, store_id):
        return self._rosters.get(store_id)

    def find(self, store_id, customer_id):
        pos = self._positions.get(store_id, {}).get(customer_id)
        if pos is None:
            return None
        return self._rosters[store_id][pos]

    def invalidate(self, store_id):
        """Mark stale; the next get() refetches from source."""
        self._stale.add(store_id)

    def is_stale(self, store_id):
        return store_id in self._stale

    def set_active(self, store_id, customer_id, active):
        """Replace one entry with a copy carrying the new flag. Returns the previous entry."""
        pos = self._positions.get(store_id, {}).get(customer_id)
        if pos is None:
            return None
        roster = self._rosters[store_id]
        previous = roster[pos]
        roster[pos] = {**previous, 'active': active}
        return previous

    def restore(self, store_id, customer_id, previous):
        pos = self._positions.get(store_id, {}).get(customer_id)
        if pos is None or previous is None:
            return
        self._rosters[store_id][pos] = previous


async def load_roster_index(cache, store_id):
    """Roster snapshot for one session plus its phone index."""
    customers = await cache.get(store_id)
    snapshot = list(customers)
    index = build_phone_index(snapshot)
    logger.info(f"Indexed {len(index)} phone keys from {len(snapshot)} customers for store {store_id}")
    return snapshot, index
