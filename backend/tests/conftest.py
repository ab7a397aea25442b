"""
Shared fixtures: an in-memory customer backend and an in-memory Mongo collection.
"""
import asyncio
import copy

import pytest

from engine import get_customer_id
from errors import CustomerApiError
from roster import RosterCache
from synthetic import generate_synthetic

STORE_ID = 'store-1'


def make_customer(cid, phone, active=True, **extra):
    return {'_id': cid, 'firstName': f'Name {cid}', 'phoneNumber': phone,
            'countryCode': '1', 'stores': [STORE_ID], 'active': active, **extra}


class FakeCustomerClient:
    """Paginated roster reads and upserts against a list of records.

    fail_phones: upserts for these phone numbers answer 422.
    """

    def __init__(self, customers=None, fail_phones=(), delay=0, total_override=None, fail_pages=()):
        self.customers = copy.deepcopy(customers or [])
        self.fail_phones = set(fail_phones)
        self.fail_pages = set(fail_pages)
        self.delay = delay
        self.total_override = total_override
        self.page_calls = []
        self.upserts = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def network_calls(self):
        return len(self.page_calls) + len(self.upserts)

    async def get_customers_by_store(self, store_id, page=1, limit=100):
        self.page_calls.append((store_id, page, limit))
        if page in self.fail_pages:
            raise CustomerApiError(f'GET /customers/store/{store_id} returned 500', status_code=500)
        start = (page - 1) * limit
        data = copy.deepcopy(self.customers[start:start + limit])
        total = len(self.customers) if self.total_override is None else self.total_override
        return {'data': data, 'total': total}

    async def upsert_customer(self, payload):
        body = payload.model_dump(exclude_none=True)
        self.upserts.append(body)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if body['phoneNumber'] in self.fail_phones:
                raise CustomerApiError('POST /customers/upsert returned 422: phoneNumber rejected',
                                       status_code=422, detail='phoneNumber rejected')
            for c in self.customers:
                if c['phoneNumber'] == body['phoneNumber']:
                    c['active'] = body.get('active', c.get('active'))
            return body
        finally:
            self.in_flight -= 1


class FakeCollection:
    """The slice of motor's collection API the server uses."""

    def __init__(self):
        self.docs = []

    async def insert_one(self, doc):
        doc.setdefault('_id', f'oid{len(self.docs)}')
        self.docs.append(doc)

    async def find_one(self, query, projection=None):
        for d in self.docs:
            if all(d.get(k) == v for k, v in query.items()):
                out = dict(d)
                if projection and projection.get('_id') == 0:
                    out.pop('_id', None)
                return out
        return None

    async def update_one(self, query, update, upsert=False):
        for d in self.docs:
            if all(d.get(k) == v for k, v in query.items()):
                d.update(update.get('$set', {}))
                return


class FakeDatabase:
    def __init__(self):
        self.sessions = FakeCollection()


@pytest.fixture
def roster():
    return [
        make_customer('A', '(555) 123-4567'),
        make_customer('B', '+1 555 222 3333'),
        make_customer('C', '5552223333'),           # same subscriber as B
        make_customer('D', '555.444.5555', active=False),
        make_customer('E', ''),
        {'id': 'F', 'firstName': 'Fallback', 'phoneNumber': '5556667777', 'active': True, 'stores': []},
    ]


@pytest.fixture
def fake_client(roster):
    return FakeCustomerClient(roster)


@pytest.fixture
def cache(fake_client):
    return RosterCache(fake_client, page_size=2)


@pytest.fixture
def synthetic():
    return generate_synthetic(store_id=STORE_ID, size=60, seed=7)


def ids_of(customers):
    return [get_customer_id(c) for c in customers]
