"""
Reconciliation session: upload -> match -> deactivate, for one store.

    idle -> parsing -> parse_error | parsed
    parsed -> matching -> ready | failed
    ready -> executing -> completed | partially_failed | failed
"""
import logging
import time
import uuid
from enum import Enum

from batch import ProgressTracker, run_with_concurrency
from engine import BATCH_CONCURRENCY, parse_csv, plan_reconciliation, select_targets, inactive_ids, get_customer_id, now_iso
from errors import CustomerApiError, MissingStoreError, MutationError, ParseError, RosterFetchError, SessionStateError
from gateway import MutationGateway
from roster import load_roster_index

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = 'idle'
    PARSING = 'parsing'
    PARSE_ERROR = 'parse_error'
    PARSED = 'parsed'
    MATCHING = 'matching'
    READY = 'ready'
    FAILED = 'failed'
    EXECUTING = 'executing'
    COMPLETED = 'completed'
    PARTIALLY_FAILED = 'partially_failed'


_REUPLOAD_FROM = {SessionState.IDLE, SessionState.PARSE_ERROR, SessionState.PARSED, SessionState.READY,
                  SessionState.FAILED, SessionState.COMPLETED, SessionState.PARTIALLY_FAILED}

TRANSITIONS = {
    SessionState.PARSING: _REUPLOAD_FROM,
    SessionState.PARSE_ERROR: {SessionState.PARSING},
    SessionState.PARSED: {SessionState.PARSING},
    SessionState.MATCHING: {SessionState.PARSED, SessionState.READY, SessionState.FAILED},
    SessionState.READY: {SessionState.MATCHING},
    SessionState.FAILED: {SessionState.MATCHING, SessionState.EXECUTING},
    SessionState.EXECUTING: {SessionState.READY},
    SessionState.COMPLETED: {SessionState.EXECUTING},
    SessionState.PARTIALLY_FAILED: {SessionState.EXECUTING},
}


def build_report(targets, results):
    rows = []
    for customer, result in zip(targets, results):
        err = result['error']
        rows.append({
            'customer_id': get_customer_id(customer),
            'phone_number': str(customer.get('phoneNumber') or ''),
            'ok': result['ok'],
            'error': getattr(err, 'message', str(err)) if err else None,
        })
    succeeded = sum(1 for r in rows if r['ok'])
    failed = len(rows) - succeeded
    return {
        'succeeded': succeeded, 'failed': failed, 'total': len(rows),
        'results': rows,
        'message': f'succeeded: {succeeded}, failed: {failed}',
    }


class ReconciliationSession:
    def __init__(self, store_id, client, cache, concurrency=BATCH_CONCURRENCY, session_id=None):
        self.session_id = session_id or str(uuid.uuid4())[:12]
        self.store_id = store_id
        self.client = client
        self.cache = cache
        self.concurrency = concurrency
        self.state = SessionState.IDLE
        self.filename = None
        self.phone_numbers = []
        self.summary = None
        self.target_ids = set()
        self.report = None
        self.error = None
        self.progress = ProgressTracker()
        self.started_at = None
        self.completed_at = None
        self._snapshot = None
        self._index = None
        self._targets = []
        self._listeners = []
        self.touched_at = time.monotonic()

    def subscribe(self, listener):
        """listener(session) is called after every state change."""
        self._listeners.append(listener)

    def _transition(self, new_state):
        if self.state not in TRANSITIONS[new_state]:
            raise SessionStateError(f'Cannot move session {self.session_id} from {self.state.value} to {new_state.value}')
        self.state = new_state
        for listener in self._listeners:
            listener(self)

    def _fail(self, state, error):
        self.error = getattr(error, 'message', None) or str(error) or type(error).__name__
        self._transition(state)

    def _require_store(self):
        if not self.store_id:
            raise MissingStoreError('Select a store before processing the file.')

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'store_id': self.store_id,
            'status': self.state.value,
            'filename': self.filename,
            'summary': self.summary,
            'progress': self.progress.snapshot(),
            'report': self.report,
            'error': self.error,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
        }

    def ingest(self, text, filename=None):
        """Parse uploaded text into phone keys. Raises ParseError when none are usable."""
        if self.state == SessionState.EXECUTING:
            raise SessionStateError('A batch is running for this session.')
        self._transition(SessionState.PARSING)
        self.touched_at = time.monotonic()
        self.filename = filename
        self.error = None
        self.summary, self.report = None, None
        self.target_ids = set()
        self._snapshot, self._index, self._targets = None, None, []
        parsed = parse_csv(text)
        self.phone_numbers = parsed['phone_numbers']
        if not self.phone_numbers:
            self._fail(SessionState.PARSE_ERROR, ParseError('No valid phone numbers found in the file.'))
            raise ParseError(self.error)
        self._transition(SessionState.PARSED)
        return parsed

    async def match(self):
        """Fetch and index the store roster, then plan the deactivation.

        Any failure leaves the session in FAILED, from which match() can be retried.
        """
        self._transition(SessionState.MATCHING)
        try:
            self._require_store()
            self._snapshot, self._index = await load_roster_index(self.cache, self.store_id)
            plan = plan_reconciliation(self.phone_numbers, self._index, exclude_ids=inactive_ids(self._snapshot))
        except Exception as e:
            self._snapshot, self._index = None, None
            self._fail(SessionState.FAILED, e)
            raise
        self.summary = plan['summary']
        self.target_ids = plan['target_ids']
        self._transition(SessionState.READY)
        return self.summary

    async def _deactivate(self, gateway, customer):
        outcome = await gateway.set_active(customer, False)
        if not outcome['ok']:
            raise MutationError(outcome['error'], customer_id=outcome['customer_id'], status_code=outcome.get('status_code'))
        return outcome

    def begin(self):
        """Claim the session for a batch. Synchronous, so two callers cannot both claim it."""
        if self.state == SessionState.EXECUTING:
            raise SessionStateError('A batch is already running for this session.')
        self._require_store()
        self._transition(SessionState.EXECUTING)
        self.touched_at = time.monotonic()
        self.started_at = now_iso()
        self._targets = select_targets(self._snapshot or [], self.target_ids)
        self.progress.start(len(self._targets))

    async def execute(self):
        """Deactivate every planned customer with bounded concurrency."""
        self.begin()
        return await self.run()

    def abort(self, error):
        """Move a batch that cannot finish to FAILED and drop its working data."""
        if self.state != SessionState.EXECUTING:
            return
        self._snapshot, self._index, self._targets = None, None, []
        self.completed_at = now_iso()
        self._fail(SessionState.FAILED, error)

    async def run(self):
        """Run the claimed batch. Always ends in a terminal state."""
        if self.state != SessionState.EXECUTING:
            raise SessionStateError(f'Session {self.session_id} is {self.state.value}, not executing.')
        targets = self._targets
        gateway = MutationGateway(self.client, self.cache, self.store_id)
        logger.info(f"Session {self.session_id}: deactivating {len(targets)} customer(s) for store {self.store_id}")

        try:
            tasks = [lambda c=c: self._deactivate(gateway, c) for c in targets]
            results = await run_with_concurrency(tasks, self.concurrency, on_settled=self.progress.record)
            self.report = build_report(targets, results)
            logger.info(f"Session {self.session_id}: {self.report['message']}")
        except Exception as e:
            logger.error(f"Session {self.session_id}: batch aborted: {e}", exc_info=True)
            self.abort(e)
            raise

        # Resync from source either way; the report stands even if this fails.
        self.cache.invalidate(self.store_id)
        try:
            await self.cache.refresh(self.store_id)
        except RosterFetchError as e:
            logger.warning(f"Session {self.session_id}: roster refresh after batch failed: {e.message}")
        except Exception as e:
            logger.error(f"Session {self.session_id}: roster refresh after batch failed: {e}", exc_info=True)
        self._snapshot, self._index, self._targets = None, None, []

        self.completed_at = now_iso()
        self._transition(SessionState.PARTIALLY_FAILED if self.report['failed'] else SessionState.COMPLETED)
        return self.report


async def set_customer_active(client, cache, store_id, customer_id, active):
    """Single-customer toggle outside a batch."""
    if not store_id:
        raise MissingStoreError('Select a store first.')
    await cache.get(store_id)
    customer = cache.find(store_id, customer_id)
    if customer is None:
        raise CustomerApiError(f'Customer {customer_id} not found in store {store_id}', status_code=404)
    return await MutationGateway(client, cache, store_id).set_active(customer, active)
