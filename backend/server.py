from fastapi import FastAPI, APIRouter, UploadFile, File, BackgroundTasks, Query
from fastapi.responses import StreamingResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import io
import csv
import logging
import time
from pathlib import Path
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from engine import (filter_customers, paginate, get_template, now_iso, ACTIVE_FILTERS,
                    BATCH_CONCURRENCY, ROSTER_PAGE_SIZE, MAX_ROSTER_PAGES)
from errors import NumberSweepError, ParseError, SessionStateError
from client import CustomerClient
from roster import RosterCache
from session import ReconciliationSession, SessionState, set_customer_active
from synthetic import generate_synthetic

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'numbersweep')]

customer_client = CustomerClient(
    base_url=os.environ.get('CUSTOMER_API_URL', 'http://localhost:3000/api'),
    token=os.environ.get('CUSTOMER_API_TOKEN') or None,
    timeout=float(os.environ.get('CUSTOMER_API_TIMEOUT', '30')),
)
roster_cache = RosterCache(
    customer_client,
    page_size=int(os.environ.get('ROSTER_PAGE_SIZE', ROSTER_PAGE_SIZE)),
    max_pages=int(os.environ.get('ROSTER_MAX_PAGES', MAX_ROSTER_PAGES)),
)
batch_concurrency = int(os.environ.get('BATCH_CONCURRENCY', BATCH_CONCURRENCY))
session_ttl = int(os.environ.get('SESSION_TTL_SECONDS', '3600'))

# Live sessions hold the upload's phone keys and the roster snapshot; only their summary is persisted.
live_sessions = {}

app = FastAPI(title="NumberSweep API")
api = APIRouter(prefix="/api")

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'),
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class SessionCreate(BaseModel):
    store_id: str = ''


class ActiveUpdate(BaseModel):
    active: bool

# =============================================================================
# HELPERS
# =============================================================================
async def get_session(session_id: str):
    doc = await db.sessions.find_one({'session_id': session_id}, {'_id': 0})
    return doc

async def update_session(session_id: str, data: dict):
    await db.sessions.update_one({'session_id': session_id}, {'$set': data})

async def save_live_session(session: ReconciliationSession):
    doc = session.to_dict()
    doc.pop('session_id')
    await update_session(session.session_id, doc)

def get_live_session(session_id: str):
    return live_sessions.get(session_id)

def prune_live_sessions(now=None):
    """Evict idle sessions older than the TTL. Running batches are never evicted."""
    now = time.monotonic() if now is None else now
    expired = [sid for sid, s in live_sessions.items()
               if s.state != SessionState.EXECUTING and now - s.touched_at > session_ttl]
    for sid in expired:
        live_sessions.pop(sid, None)
    if expired:
        logger.info(f"Evicted {len(expired)} idle session(s)")
    return expired

def _decode(content: bytes):
    try:
        return content.decode('utf-8-sig')
    except UnicodeDecodeError:
        return content.decode('latin-1')

# =============================================================================
# ROSTER ENDPOINTS
# =============================================================================
@api.get("/stores/{store_id}/customers")
async def list_customers(store_id: str, search: Optional[str] = None, status: str = 'all',
                         page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=500)):
    if status not in ACTIVE_FILTERS:
        return {"error": f"Invalid status filter. Must be one of: {', '.join(ACTIVE_FILTERS)}"}
    try:
        customers = await roster_cache.get(store_id)
    except NumberSweepError as e:
        logger.error(f"Roster load failed for store {store_id}: {e.message}")
        return {"error": e.message}

    filtered = filter_customers(customers, search, status)
    return {
        "customers": paginate(filtered, page, limit),
        "total": len(filtered),
        "roster_total": len(customers),
        "page": page, "limit": limit,
    }

@api.post("/stores/{store_id}/customers/{customer_id}/active")
async def toggle_customer(store_id: str, customer_id: str, body: ActiveUpdate):
    try:
        outcome = await set_customer_active(customer_client, roster_cache, store_id, customer_id, body.active)
    except NumberSweepError as e:
        return {"error": e.message}
    if not outcome['ok']:
        status = outcome.get('status_code') or 'error'
        return {"error": f"Could not update customer status ({status}): {outcome['error']}",
                "customer_id": customer_id}
    return {"ok": True, "customer_id": customer_id, "active": body.active}

@api.post("/stores/{store_id}/refresh")
async def refresh_roster(store_id: str):
    roster_cache.invalidate(store_id)
    try:
        customers = await roster_cache.refresh(store_id)
    except NumberSweepError as e:
        return {"error": e.message}
    return {"ok": True, "total": len(customers)}

# =============================================================================
# SESSION ENDPOINTS
# =============================================================================
@api.post("/sessions")
async def create_session(body: SessionCreate):
    store_id = body.store_id.strip()
    if not store_id:
        return {"error": "Select a store before uploading a file."}
    prune_live_sessions()
    session = ReconciliationSession(store_id, customer_client, roster_cache, concurrency=batch_concurrency)
    live_sessions[session.session_id] = session
    doc = {**session.to_dict(), 'created_at': now_iso()}
    await db.sessions.insert_one(dict(doc))
    return doc

@api.get("/sessions/{session_id}")
async def get_session_info(session_id: str):
    s = await get_session(session_id)
    if not s:
        return {"error": "Session not found"}
    return s

# =============================================================================
# UPLOAD ENDPOINT
# =============================================================================
@api.post("/sessions/{session_id}/upload")
async def upload_file(session_id: str, file: UploadFile = File(...)):
    prune_live_sessions()
    session = get_live_session(session_id)
    if not session:
        return {"error": "Session not found or expired. Start a new session."}

    text = _decode(await file.read())
    try:
        parsed = session.ingest(text, filename=file.filename)
    except (ParseError, SessionStateError) as e:
        await save_live_session(session)
        return {"error": e.message, "status": session.state.value}

    try:
        summary = await session.match()
    except NumberSweepError as e:
        logger.error(f"Session {session_id}: matching failed: {e.message}")
        await save_live_session(session)
        return {"error": e.message, "status": session.state.value}

    await save_live_session(session)
    return {
        "filename": file.filename,
        "rows": len(parsed['raw_lines']),
        "phone_numbers": len(parsed['phone_numbers']),
        "summary": summary,
        "status": session.state.value,
    }

# =============================================================================
# BATCH DEACTIVATION
# =============================================================================
async def run_batch(session_id: str):
    session = get_live_session(session_id)
    try:
        await session.run()
    except Exception as e:
        logger.error(f"Batch failed for session {session_id}: {e}", exc_info=True)
        session.abort(e)
    await save_live_session(session)
    # Finished sessions are served from Mongo from here on
    live_sessions.pop(session_id, None)

@api.post("/sessions/{session_id}/deactivate")
async def start_deactivation(session_id: str, background_tasks: BackgroundTasks):
    session = get_live_session(session_id)
    if not session:
        return {"error": "Session not found or expired. Start a new session."}
    if session.state == SessionState.EXECUTING:
        return {"error": "A batch is already running for this session."}
    if session.state != SessionState.READY:
        return {"error": f"Session is {session.state.value}. Upload a file and review the summary first."}
    if not session.summary or session.summary['to_deactivate'] == 0:
        return {"error": "No customers to deactivate."}

    try:
        session.begin()
    except NumberSweepError as e:
        return {"error": e.message}
    await save_live_session(session)
    background_tasks.add_task(run_batch, session_id)
    return {"ok": True, "status": session.state.value, "total": session.progress.total}

@api.get("/sessions/{session_id}/status")
async def get_status(session_id: str):
    session = get_live_session(session_id)
    if session:
        s = session.to_dict()
    else:
        s = await get_session(session_id)
        if not s:
            return {"error": "Session not found"}
    return {
        'status': s['status'],
        'progress': s.get('progress'),
        'summary': s.get('summary'),
        'report': s.get('report'),
        'error': s.get('error'),
        'completed_at': s.get('completed_at'),
    }

# =============================================================================
# EXPORT
# =============================================================================
async def _load_report(session_id: str):
    session = get_live_session(session_id)
    if session:
        return session.to_dict()
    return await get_session(session_id)

@api.get("/sessions/{session_id}/export/results")
async def export_results(session_id: str):
    s = await _load_report(session_id)
    if not s or not s.get('report'):
        return {"error": "Batch not complete"}

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['customer_id', 'phone_number', 'result', 'error'])
    for r in s['report']['results']:
        writer.writerow([r['customer_id'], r['phone_number'], 'ok' if r['ok'] else 'failed', r.get('error') or ''])

    return StreamingResponse(io.BytesIO(output.getvalue().encode()),
                             media_type='text/csv',
                             headers={'Content-Disposition': f'attachment; filename=NumberSweep_Results_{session_id}_{datetime.now().strftime("%Y-%m-%d")}.csv'})

@api.get("/sessions/{session_id}/export/report")
async def export_report(session_id: str):
    from reportlab.lib.pagesizes import A4
    from reportlab.lib import colors
    from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table as RLTable, TableStyle
    from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle

    s = await _load_report(session_id)
    if not s or not s.get('report'):
        return {"error": "Batch not complete"}
    report, summary = s['report'], s.get('summary') or {}

    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('Title', parent=styles['Title'], fontSize=20, spaceAfter=20)
    header_style = TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.Color(0.06, 0.09, 0.16)),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
    ])
    elements = []

    elements.append(Paragraph("NumberSweep - Bulk Deactivation Report", title_style))
    elements.append(Paragraph(f"Store: {s.get('store_id', '')}", styles['Normal']))
    elements.append(Paragraph(f"File: {s.get('filename') or '-'}", styles['Normal']))
    elements.append(Paragraph(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}", styles['Normal']))
    elements.append(Spacer(1, 20))

    summary_data = [['Numbers in file', 'Found', 'Not found', 'To deactivate']]
    summary_data.append([str(summary.get('total_csv', 0)), str(summary.get('found', 0)),
                         str(summary.get('not_found', 0)), str(summary.get('to_deactivate', 0))])
    t = RLTable(summary_data, colWidths=[120, 100, 100, 110])
    t.setStyle(header_style)
    elements.append(t)
    elements.append(Spacer(1, 15))

    elements.append(Paragraph(f"<b>{report['message']}</b>", styles['Heading2']))
    failures = [r for r in report['results'] if not r['ok']]
    if failures:
        fail_data = [['Customer', 'Phone', 'Error']]
        for r in failures[:200]:
            fail_data.append([r['customer_id'], r['phone_number'], (r.get('error') or '')[:80]])
        t2 = RLTable(fail_data, colWidths=[110, 110, 230])
        t2.setStyle(header_style)
        elements.append(t2)
    elements.append(Spacer(1, 20))
    elements.append(Paragraph("Failed customers keep their previous status. The roster was re-synchronized after the batch.", styles['Italic']))

    doc.build(elements)
    buf.seek(0)
    return StreamingResponse(buf, media_type='application/pdf',
                             headers={'Content-Disposition': f'attachment; filename=NumberSweep_Report_{datetime.now().strftime("%Y-%m-%d")}.pdf'})

# =============================================================================
# TEMPLATES
# =============================================================================
@api.get("/templates/upload")
async def download_template():
    return StreamingResponse(io.BytesIO(get_template().encode()), media_type='text/csv',
                             headers={'Content-Disposition': 'attachment; filename=numbers_template.csv'})

# =============================================================================
# SYNTHETIC DATA
# =============================================================================
@api.get("/synthetic/download")
async def download_synthetic(size: int = Query(60, ge=10, le=5000), seed: int = 42):
    data = generate_synthetic(size=size, seed=seed)
    return StreamingResponse(io.BytesIO(data['csv'].encode()), media_type='text/csv',
                             headers={'Content-Disposition': 'attachment; filename=numbers_synthetic.csv'})

# =============================================================================
# HEALTH
# =============================================================================
@api.get("/")
async def root():
    return {"message": "NumberSweep API v1.0", "status": "running"}

# =============================================================================
# APP CONFIG
# =============================================================================
app.include_router(api)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_clients():
    client.close()
    await customer_client.close()
