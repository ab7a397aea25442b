"""
Customer API client.
Async client for the marketing backend's customer endpoints:

    async with CustomerClient(base_url="https://api.example.com/api") as client:
        page = await client.get_customers_by_store("store-1", page=1, limit=500)
        await client.upsert_customer(CustomerUpsert(phoneNumber="5551234567", countryCode="1", stores=["store-1"], active=False))

Partial updates (PATCH /customers/{id}) answer 404 in production; upsert is the only write path.
"""
import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field

from errors import CustomerApiError

logger = logging.getLogger(__name__)


class CustomerUpsert(BaseModel):
    """Full field set the upsert endpoint requires."""
    phoneNumber: str
    firstName: Optional[str] = None
    countryCode: str = '1'
    stores: List[str] = Field(default_factory=list)
    active: Optional[bool] = None


def _error_detail(response):
    """Server-reported message, if the body carries one."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or None
    if isinstance(data, dict):
        detail = data.get('message') or data.get('error')
        if isinstance(detail, list):
            detail = '; '.join(str(d) for d in detail)
        return str(detail) if detail else None
    return None


class CustomerClient:
    def __init__(self, base_url="http://localhost:3000/api", token=None, timeout=30.0, transport=None):
        self.base_url = base_url.rstrip('/')
        self._token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        await self._client.aclose()

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        if self._token:
            headers['Authorization'] = f'Bearer {self._token}'
        return headers

    async def _request(self, method, path, json=None, params=None):
        try:
            response = await self._client.request(method, path, headers=self._headers(), json=json, params=params)
        except httpx.HTTPError as e:
            raise CustomerApiError(f'{method} {path} failed: {e}') from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            message = f'{method} {path} returned {response.status_code}'
            if detail:
                message = f'{message}: {detail}'
            raise CustomerApiError(message, status_code=response.status_code, detail=detail)

        if response.status_code == 204:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise CustomerApiError(f'{method} {path} returned {response.status_code} with a non-JSON body',
                                   status_code=response.status_code, detail=response.text[:200] or None) from e

    async def get_customers_by_store(self, store_id, page=1, limit=100):
        """One roster page: {'data': [...], 'total': n}."""
        data = await self._request('GET', f'/customers/store/{store_id}', params={'page': page, 'limit': limit})
        if isinstance(data, list):
            return {'data': data, 'total': None}
        return {'data': data.get('data') or [], 'total': data.get('total')}

    async def upsert_customer(self, payload):
        if isinstance(payload, dict):
            payload = CustomerUpsert(**payload)
        return await self._request('POST', '/customers/upsert', json=payload.model_dump(exclude_none=True))
