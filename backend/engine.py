"""
NumberSweep Reconciliation Engine v1.0
Deterministic phone-number ingestion and roster reconciliation.
Pure functions only: no network, no cache, no clock except now_iso().
"""
import re
import io
import csv
from datetime import datetime, timezone

# =============================================================================
# CONSTANTS
# =============================================================================
PHONE_HEADER_ALIASES = ['phone', 'phonenumber', 'number', 'telefono', 'tel']

CUSTOMER_ID_FIELDS = ['_id', 'id', 'customerId']

US_TRUNK_PREFIX = '1'
US_NUMBER_LENGTH = 10

ROSTER_PAGE_SIZE = 500
MAX_ROSTER_PAGES = 2000
BATCH_CONCURRENCY = 8
DEFAULT_COUNTRY_CODE = '1'

ACTIVE_FILTERS = ['all', 'active', 'inactive']

_NON_DIGITS = re.compile(r'\D')
_LETTERS = re.compile(r'[a-zA-Z]')
_WHITESPACE = re.compile(r'\s+')
_NEWLINES = re.compile(r'\r\n|\r|\n')

# =============================================================================
# HELPERS
# =============================================================================
def now_iso():
    return datetime.now(timezone.utc).isoformat()

def get_customer_id(customer):
    """First non-empty of _id / id / customerId, as a string ('' if none)."""
    if not customer:
        return ''
    for field in CUSTOMER_ID_FIELDS:
        value = customer.get(field)
        if value:
            return str(value)
    return ''

# =============================================================================
# PHONE NORMALIZATION
# =============================================================================
def normalize_phone(text):
    """Canonical digits-only key. 11 digits with a leading 1 drop the trunk digit."""
    digits = _NON_DIGITS.sub('', str(text or ''))
    if not digits:
        return ''
    if len(digits) == US_NUMBER_LENGTH + 1 and digits.startswith(US_TRUNK_PREFIX):
        return digits[1:]
    return digits

# =============================================================================
# TABULAR INGESTION
# =============================================================================
def detect_delimiter(first_line):
    comma = first_line.count(',')
    semi = first_line.count(';')
    tab = first_line.count('\t')
    if tab >= comma and tab >= semi and tab > 0:
        return '\t'
    if semi >= comma and semi > 0:
        return ';'
    return ','

def split_line(line, delim):
    """Split on delim outside double quotes. Quote characters are dropped."""
    cells = []
    cur = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
            continue
        if ch == delim and not in_quotes:
            cells.append(''.join(cur))
            cur = []
            continue
        cur.append(ch)
    cells.append(''.join(cur))
    return [c.strip() for c in cells]

def _looks_like_header(cells):
    return any(_LETTERS.search(c) for c in cells)

def find_phone_column(header_cells):
    """Index of the first header cell naming a phone column, else 0."""
    norm = [_WHITESPACE.sub('', c.lower()) for c in header_cells]
    for i, h in enumerate(norm):
        if h in PHONE_HEADER_ALIASES:
            return i
    return 0

def parse_csv(text):
    """Turn uploaded text into {'raw_lines', 'phone_numbers'} with deduplicated phone keys."""
    raw_lines = [l.strip() for l in _NEWLINES.split(text or '')]
    raw_lines = [l for l in raw_lines if l]
    if not raw_lines:
        return {'raw_lines': [], 'phone_numbers': []}

    delim = detect_delimiter(raw_lines[0])
    header_cells = split_line(raw_lines[0], delim)

    phone_idx, start_at = 0, 0
    if _looks_like_header(header_cells):
        start_at = 1
        phone_idx = find_phone_column(header_cells)

    phone_numbers = []
    for line in raw_lines[start_at:]:
        cells = split_line(line, delim)
        candidate = cells[phone_idx] if phone_idx < len(cells) else cells[0]
        key = normalize_phone(candidate)
        if key:
            phone_numbers.append(key)

    # dict keeps first-seen order
    deduped = list(dict.fromkeys(phone_numbers))
    return {'raw_lines': raw_lines, 'phone_numbers': deduped}

# =============================================================================
# ROSTER INDEX
# =============================================================================
def build_phone_index(customers):
    """PhoneKey -> [customer ids]. Records without a phone key or id are not indexed."""
    index = {}
    for c in customers:
        key = normalize_phone(c.get('phoneNumber'))
        if not key:
            continue
        cid = get_customer_id(c)
        if not cid:
            continue
        index.setdefault(key, []).append(cid)
    return index

def inactive_ids(customers):
    return {get_customer_id(c) for c in customers if not c.get('active') and get_customer_id(c)}

# =============================================================================
# RECONCILIATION PLAN
# =============================================================================
def plan_reconciliation(phone_keys, index, exclude_ids=None):
    """Match phone keys against the index.

    found/not_found count per key; to_deactivate is the size of the union of
    matched ids, minus exclude_ids (customers already in the target state).
    """
    exclude_ids = exclude_ids or set()
    target_ids = set()
    found, not_found = 0, 0
    for key in phone_keys:
        ids = index.get(key)
        if ids:
            found += 1
            target_ids.update(i for i in ids if i not in exclude_ids)
        else:
            not_found += 1

    summary = {
        'total_csv': len(phone_keys),
        'found': found,
        'not_found': not_found,
        'to_deactivate': len(target_ids),
    }
    return {'summary': summary, 'target_ids': target_ids}

def select_targets(customers, target_ids):
    """Customer records for target_ids, one per id, in roster order."""
    targets = {}
    for c in customers:
        cid = get_customer_id(c)
        if cid and cid in target_ids and cid not in targets:
            targets[cid] = c
    return list(targets.values())

# =============================================================================
# ROSTER FILTERING
# =============================================================================
def filter_customers(customers, search='', status='all'):
    """Active filter plus number search (normalized digits or raw substring)."""
    raw = (search or '').strip()
    norm_q = normalize_phone(raw)
    q_lower = raw.lower()

    out = []
    for c in customers:
        if status == 'active' and not c.get('active'):
            continue
        if status == 'inactive' and c.get('active'):
            continue
        if raw:
            phone = str(c.get('phoneNumber') or '')
            if not ((norm_q and norm_q in normalize_phone(phone)) or q_lower in phone.lower()):
                continue
        out.append(c)
    return out

def paginate(rows, page, limit):
    start = max(page - 1, 0) * limit
    return rows[start:start + limit]

# =============================================================================
# CSV TEMPLATES
# =============================================================================
def get_template():
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['phone', 'name'])
    writer.writerow(['(555) 123-4567', 'Ana Lopez'])
    writer.writerow(['+1 555 987 6543', 'John Smith'])
    return output.getvalue()
