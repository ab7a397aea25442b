"""
NumberSweep Synthetic Dataset Generator
A store roster plus an upload file with known ground truth:
shared household numbers, blank phones, already-inactive customers,
repeated upload rows and numbers that are not on the roster.
"""
import random
import io
import csv

FIRST_NAMES = [
    "Ana", "Luis", "Maria", "Jose", "Carmen", "Pedro", "Lucia", "Miguel", "Sofia", "Diego",
    "Elena", "Jorge", "Paula", "Carlos", "Rosa", "Andres", "Julia", "Raul", "Marta", "Hector",
    "John", "Emily", "Michael", "Sarah", "David", "Jessica", "James", "Ashley", "Robert", "Megan",
]

# Ways the same subscriber shows up in exported spreadsheets
PHONE_FORMATS = [
    lambda d: d,
    lambda d: f"1{d}",
    lambda d: f"+1 {d[:3]}-{d[3:6]}-{d[6:]}",
    lambda d: f"({d[:3]}) {d[3:6]}-{d[6:]}",
    lambda d: f"{d[:3]}.{d[3:6]}.{d[6:]}",
    lambda d: f"{d[:3]} {d[3:6]} {d[6:]}",
]

def gen_phone(rng):
    # 555-01xx style exchange keeps numbers fictional
    return f"{rng.randint(201, 989)}555{rng.randint(0, 9999):04d}"

def gen_customer_id(num):
    return f"cust{num:05d}"

def generate_synthetic(store_id="store-synth", size=60, seed=42):
    rng = random.Random(seed)
    customers = []
    used = set()

    for i in range(size):
        phone = gen_phone(rng)
        while phone in used:
            phone = gen_phone(rng)
        used.add(phone)
        customers.append({
            '_id': gen_customer_id(i + 1),
            'firstName': FIRST_NAMES[i % len(FIRST_NAMES)],
            'phoneNumber': phone,
            'countryCode': '1',
            'stores': [store_id],
            'active': True,
        })

    # Households: two more records sharing the first two customers' numbers
    for j in range(2):
        base = customers[j]
        customers.append({
            '_id': gen_customer_id(size + j + 1), 'firstName': f"{base['firstName']} Jr",
            'phoneNumber': PHONE_FORMATS[2](base['phoneNumber']), 'countryCode': '',
            'stores': [], 'active': True,
        })

    # Records with no usable phone stay in the roster but are never indexed
    customers.append({'_id': gen_customer_id(size + 3), 'firstName': 'No Phone',
                      'phoneNumber': '', 'countryCode': '1', 'stores': [store_id], 'active': True})
    customers.append({'id': gen_customer_id(size + 4), 'firstName': 'Letters Only',
                      'phoneNumber': 'n/a', 'countryCode': '1', 'stores': [store_id], 'active': True})

    # A few customers already inactive
    inactive = [customers[k]['_id'] for k in (10, 11, 12) if k < size]
    for c in customers:
        if c.get('_id') in inactive:
            c['active'] = False

    # Upload: half the roster in random formats, repeats and unknown numbers
    picked = rng.sample(customers[:size], size // 2)
    upload_phones = [rng.choice(PHONE_FORMATS)(c['phoneNumber']) for c in picked]
    upload_phones += upload_phones[:3]
    unknown = []
    while len(unknown) < 5:
        phone = gen_phone(rng)
        if phone not in used:
            unknown.append(phone)
            used.add(phone)
    upload_phones += unknown
    rng.shuffle(upload_phones)

    picked_ids = {c['_id'] for c in picked}
    expected_targets = {c['_id'] for c in picked if c['active']}
    # Household records share a picked number
    for j in range(2):
        if customers[j]['_id'] in picked_ids:
            expected_targets.add(customers[size + j]['_id'])

    return {
        'store_id': store_id,
        'customers': customers,
        'upload_phones': upload_phones,
        'csv': render_upload_csv(upload_phones),
        'metadata': {
            'total_customers': len(customers),
            'upload_rows': len(upload_phones),
            'unique_upload_numbers': len(picked) + len(unknown),
            'expected_found': len(picked),
            'expected_not_found': len(unknown),
            'expected_to_deactivate': len(expected_targets),
        }
    }

def render_upload_csv(phones, delimiter=',', header=True):
    output = io.StringIO()
    writer = csv.writer(output, delimiter=delimiter)
    if header:
        writer.writerow(['Phone Number', 'Notes'])
    for i, p in enumerate(phones):
        writer.writerow([p, f'row {i + 1}'])
    return output.getvalue()
