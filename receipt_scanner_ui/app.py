import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Add parent directory to path so the shared receipt_scanner helpers import
sys.path.insert(0, str(Path(__file__).parent.parent))

from receipt_scanner.formatters import format_currency
from receipt_scanner.schemas import ReceiptData, ReceiptItem, SaveResult
from receipt_scanner.services.processing_queue import ProcessingQueue, QueueItem
from receipt_scanner.services.viewer_service import format_month_year, next_sort, search_months

import requests
import pandas as pd
import streamlit as st
from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv(usecwd=True))

# =============================================================================
# Configuration
# =============================================================================
API_BASE = (os.getenv("API_BASE_URL") or os.getenv("BACKEND_URL") or "http://localhost:8000").rstrip("/")
CURRENCY = os.getenv("CURRENCY", "PHP")

st.set_page_config(
    page_title="Receipt Scanner",
    page_icon="🧾",
    layout="wide",
    initial_sidebar_state="expanded"
)

STATUS_BADGES = {
    "pending": "⏳ Pending",
    "analyzing": "🔍 Analyzing",
    "awaiting_confirmation": "✋ Awaiting confirmation",
    "saving": "💾 Saving",
    "saved": "✅ Saved",
    "duplicate": "♻️ Duplicate",
    "error": "❌ Error",
    "not_configured": "⚙️ Database not configured",
    "skipped": "⏭️ Skipped",
}

SORT_LABELS = {"date": "Date", "merchant_name": "Merchant", "total": "Total"}

SCANNER_TAB = "📷 Scanner"
RECEIPTS_TAB = "🗂️ My Receipts"

# =============================================================================
# Session State Initialization
# =============================================================================
def init_session_state():
    """Initialize all session state variables"""
    defaults = {
        "access_token": None,
        "me": None,
        "auth_error": None,
        "queue": ProcessingQueue(),
        "scan_started": False,
        "use_today_date": False,
        "archive_to_drive": True,
        "log_to_sheets": True,
        "uploader_key": 0,
        "receipts_version": 0,
        "selected_month": None,
        "sort_key": "date",
        "sort_direction": "desc",
        "confirm_delete_id": None,
        "active_tab": SCANNER_TAB,
    }
    for key, val in defaults.items():
        st.session_state.setdefault(key, val)

init_session_state()

# =============================================================================
# API Communication Layer
# =============================================================================
def _headers() -> Dict[str, str]:
    """Build request headers with the app token"""
    h = {"Accept": "application/json"}
    tok = st.session_state.get("access_token")
    if tok:
        h["Authorization"] = f"Bearer {tok}"
    return h


def _handle_response(resp: requests.Response) -> Any:
    """Parse response or raise meaningful error"""
    try:
        data = resp.json()
    except ValueError:
        data = {"detail": resp.text}

    if resp.status_code >= 400:
        detail = data.get("detail", str(data)) if isinstance(data, dict) else str(data)
        raise RuntimeError(f"API Error ({resp.status_code}): {detail}")

    return data


def api_get(path: str, *, params: Optional[Dict[str, Any]] = None, timeout: int = 30) -> Any:
    """GET request to API"""
    resp = requests.get(f"{API_BASE}{path}", headers=_headers(), params=params, timeout=timeout)
    return _handle_response(resp)


def api_post(path: str, *, json_body: Optional[Dict[str, Any]] = None,
             data: Optional[Dict[str, Any]] = None,
             files: Optional[List] = None, timeout: int = 60) -> Any:
    """POST request to API"""
    resp = requests.post(f"{API_BASE}{path}", headers=_headers(),
                         json=json_body, data=data, files=files, timeout=timeout)
    return _handle_response(resp)


def api_patch(path: str, *, json_body: Dict[str, Any], timeout: int = 30) -> Any:
    """PATCH request to API"""
    resp = requests.patch(f"{API_BASE}{path}", headers=_headers(), json=json_body, timeout=timeout)
    return _handle_response(resp)


def api_delete(path: str, *, timeout: int = 30) -> Any:
    """DELETE request to API"""
    resp = requests.delete(f"{API_BASE}{path}", headers=_headers(), timeout=timeout)
    return _handle_response(resp)

# =============================================================================
# Authentication Flow
# =============================================================================
def pick_up_login_redirect():
    """The backend sends us back with ?token=... or ?error=..."""
    params = st.query_params
    token = params.get("token")
    error = params.get("error")
    if not token and not error:
        return

    if token:
        st.session_state["access_token"] = token
        st.session_state["auth_error"] = None
        try:
            st.session_state["me"] = api_get("/me")
        except RuntimeError as e:
            st.session_state["access_token"] = None
            st.session_state["auth_error"] = str(e)
    else:
        st.session_state["auth_error"] = error

    st.query_params.clear()


def render_auth_page():
    """Google sign-in"""
    st.title("🧾 Receipt Scanner")
    st.markdown("### Sign in to scan and track your receipts")

    col1, col2, col3 = st.columns([1, 2, 1])

    with col2:
        err = st.session_state.get("auth_error")
        if err == "not_authorized":
            st.error("Access denied. This Google account is not authorized to use the app.")
        elif err == "login_failed":
            st.error("Google sign-in failed. Please try again.")
        elif err:
            st.error(f"Sign-in failed: {err}")

        st.link_button("Sign in with Google", f"{API_BASE}/auth/login", type="primary", use_container_width=True)
        st.caption("Drive and Sheets access is requested so receipts can be archived and logged.")

        st.divider()
        st.caption(f"🔒 Secure connection to: {API_BASE}")

# =============================================================================
# Queue callbacks (the backend does the actual work)
# =============================================================================
def _file_part(item: QueueItem) -> List[Tuple[str, Tuple[str, bytes, str]]]:
    return [("file", (item.filename, item.content, item.mime_type))]


def analyze_item(item: QueueItem) -> ReceiptData:
    data = api_post(
        "/receipts/extract",
        data={"use_today_date": str(st.session_state["use_today_date"]).lower()},
        files=_file_part(item),
        timeout=180,
    )
    return ReceiptData.model_validate(data)


def save_item(data: ReceiptData, item: QueueItem) -> SaveResult:
    result = api_post(
        "/receipts",
        data={
            "receipt": data.model_dump_json(),
            "archive_to_drive": str(st.session_state["archive_to_drive"]).lower(),
            "log_to_sheets": str(st.session_state["log_to_sheets"]).lower(),
        },
        files=_file_part(item),
        timeout=120,
    )
    return SaveResult.model_validate(result)


def analyze_next_in_queue():
    queue: ProcessingQueue = st.session_state["queue"]
    if not queue.pending:
        return
    with st.spinner(queue.progress_text() or "Analyzing..."):
        queue.analyze_next(analyze_item)


def reset_scanner():
    st.session_state["queue"] = ProcessingQueue()
    st.session_state["scan_started"] = False
    st.session_state["uploader_key"] += 1

# =============================================================================
# Scanner Tab
# =============================================================================
def render_capture_section():
    """Camera + upload, with the processing options"""
    queue: ProcessingQueue = st.session_state["queue"]

    col1, col2 = st.columns([2, 1])

    with col1:
        files = st.file_uploader(
            "Upload receipt images",
            type=["png", "jpg", "jpeg", "webp", "heic"],
            accept_multiple_files=True,
            key=f"uploader_{st.session_state['uploader_key']}",
        )
        photo = st.camera_input("…or take a photo", key=f"camera_{st.session_state['uploader_key']}")

    with col2:
        st.toggle("Use today's date", key="use_today_date",
                  help="Skip reading the date and record today instead")
        st.toggle("Archive image to Google Drive", key="archive_to_drive")
        st.toggle("Log to Google Sheets", key="log_to_sheets")

    incoming = [(f.name, f.getvalue(), f.type) for f in (files or [])]
    if photo is not None:
        incoming.append(("camera_photo.jpg", photo.getvalue(), "image/jpeg"))

    if incoming:
        queue.add_files(incoming)

    count = len(queue.items)
    if count:
        c1, c2 = st.columns(2)
        with c1:
            label = f"Analyze {count} Receipt{'s' if count > 1 else ''}"
            if st.button(label, type="primary", use_container_width=True):
                st.session_state["scan_started"] = True
                analyze_next_in_queue()
                st.rerun()
        with c2:
            if st.button("Clear", use_container_width=True):
                reset_scanner()
                st.rerun()


def render_confirmation(item: QueueItem):
    """Review one draft before it is saved"""
    queue: ProcessingQueue = st.session_state["queue"]
    idx, total = queue.position()
    draft = item.data or ReceiptData()

    st.subheader(f"Confirm receipt {idx} of {total}")
    col_img, col_form = st.columns([1, 2])

    with col_img:
        st.image(item.content, caption=item.filename, use_container_width=True)

    with col_form:
        with st.form(f"confirm_{idx}_{item.filename}"):
            date = st.text_input("Date", value=draft.date, help="YYYY-MM-DD")
            merchant = st.text_input("Merchant", value=draft.merchant_name)
            total_amount = st.number_input("Total", value=float(draft.total), step=0.01, format="%.2f")
            notes = st.text_area("Notes", value=draft.notes or "")

            items_df = pd.DataFrame(
                [i.model_dump() for i in draft.items] or [{"name": "", "price": 0.0}],
                columns=["name", "price"],
            )
            edited_items = st.data_editor(
                items_df,
                num_rows="dynamic",
                use_container_width=True,
                column_config={
                    "name": st.column_config.TextColumn("Item"),
                    "price": st.column_config.NumberColumn("Price", format="%.2f"),
                },
                key=f"items_{idx}_{item.filename}",
            )

            c1, c2 = st.columns(2)
            with c1:
                confirmed = st.form_submit_button("Confirm & Save", type="primary", use_container_width=True)
            with c2:
                skipped = st.form_submit_button("Skip", use_container_width=True)

    if confirmed:
        rows = edited_items.fillna({"name": "", "price": 0.0}).to_dict("records")
        edited = draft.model_copy(update={
            "date": date.strip(),
            "merchant_name": merchant.strip(),
            "total": float(total_amount),
            "notes": notes.strip() or None,
            "items": [ReceiptItem(name=str(r["name"]).strip(), price=float(r["price"]))
                      for r in rows if str(r["name"]).strip()],
        })
        with st.spinner("Saving..."):
            saved_item = queue.confirm(edited, save_item)
        if saved_item.status == "saved":
            st.session_state["receipts_version"] += 1
        analyze_next_in_queue()
        st.rerun()

    if skipped:
        queue.skip()
        analyze_next_in_queue()
        st.rerun()


def render_results_list():
    """Per-file status, like a processing log"""
    queue: ProcessingQueue = st.session_state["queue"]

    for item in queue.items:
        with st.container(border=True):
            col1, col2, col3 = st.columns([2, 2, 1])
            with col1:
                st.write(f"**{item.filename}**")
                st.caption(STATUS_BADGES.get(item.status, item.status))
            with col2:
                if item.data and item.data.merchant_name:
                    st.write(f"{item.data.merchant_name} · {item.data.date}")
                if item.error and item.status != "saved":
                    st.caption(item.error)
                if item.save_result:
                    for w in item.save_result.warnings:
                        st.warning(w)
            with col3:
                if item.data:
                    st.write(format_currency(item.data.total, CURRENCY))


def render_scanner_tab():
    """Capture -> analyze -> confirm -> save"""
    st.header("📷 Scan Receipts")
    queue: ProcessingQueue = st.session_state["queue"]

    if not st.session_state["scan_started"]:
        render_capture_section()
        return

    current = queue.current
    if current is not None and current.status == "awaiting_confirmation":
        render_confirmation(current)
    elif queue.pending:
        # a previous run was interrupted between items
        analyze_next_in_queue()
        st.rerun()

    st.caption(queue.progress_text())
    render_results_list()

    if queue.is_done:
        c1, c2 = st.columns(2)
        with c1:
            if st.button("Scan More", use_container_width=True):
                reset_scanner()
                st.rerun()
        with c2:
            st.button(
                "View All Receipts",
                use_container_width=True,
                on_click=lambda: st.session_state.update(active_tab=RECEIPTS_TAB),
            )

# =============================================================================
# My Receipts Tab
# =============================================================================
@st.cache_data(ttl=60, show_spinner=False)
def fetch_receipts_view(token: str, month: Optional[str], search: str,
                        sort_key: str, direction: str, version: int) -> Dict[str, Any]:
    params = {"search": search, "sort_key": sort_key, "direction": direction}
    if month:
        params["month"] = month
    return api_get("/receipts", params=params)


def render_month_picker(months: List[str], selected: Optional[str]) -> Optional[str]:
    """Month dropdown grouped by year, searchable by month name or year"""
    query = st.text_input("Find month", placeholder="Search month or year...", key="month_query")
    groups = search_months(months, query)
    options = [m for ms in groups.values() for m in ms]
    if not options:
        st.caption("No matching months.")
        return selected

    index = options.index(selected) if selected in options else 0
    return st.selectbox(
        "Month",
        options,
        index=index,
        format_func=lambda m: f"{format_month_year(m)}",
        key="month_select",
    )


def render_sort_buttons():
    cols = st.columns(len(SORT_LABELS))
    for col, (key, label) in zip(cols, SORT_LABELS.items()):
        with col:
            arrow = ""
            if st.session_state["sort_key"] == key:
                arrow = " ▲" if st.session_state["sort_direction"] == "asc" else " ▼"
            if st.button(f"{label}{arrow}", key=f"sort_{key}", use_container_width=True):
                new_key, new_dir = next_sort(
                    st.session_state["sort_key"], st.session_state["sort_direction"], key
                )
                st.session_state["sort_key"] = new_key
                st.session_state["sort_direction"] = new_dir
                st.rerun()


def render_receipts_tab():
    """Monthly viewer with search, sort, edit and delete"""
    st.header("🗂️ My Receipts")

    col1, col2, col3 = st.columns([2, 2, 1])
    with col2:
        search = st.text_input("Search merchant", placeholder="e.g. Jollibee", key="viewer_search")
    with col3:
        if st.button("🔄 Refresh", use_container_width=True):
            fetch_receipts_view.clear()
            st.rerun()

    try:
        view = fetch_receipts_view(
            st.session_state["access_token"],
            st.session_state["selected_month"],
            search or "",
            st.session_state["sort_key"],
            st.session_state["sort_direction"],
            st.session_state["receipts_version"],
        )
    except RuntimeError as e:
        st.error(f"Failed to load receipts: {e}")
        return

    months = view.get("available_months", [])
    if not months:
        st.info("No receipts yet. Scan some receipts to get started!")
        return

    with col1:
        chosen = render_month_picker(months, view.get("selected_month"))
    if chosen and chosen != view.get("selected_month"):
        st.session_state["selected_month"] = chosen
        st.rerun()

    render_sort_buttons()

    receipts = view.get("receipts", [])
    month_label = format_month_year(view.get("selected_month") or "")
    if not receipts:
        if search:
            st.info(f'No receipts match your search for "{search}" in {month_label}.')
        else:
            st.info(f"No receipts found for {month_label}.")
        return

    df = pd.DataFrame([
        {
            "ID": r.get("id"),
            "Date": r.get("date"),
            "Merchant": r.get("merchant_name"),
            "Items": len(r.get("items") or []),
            "Total": format_currency(r.get("total"), CURRENCY),
        }
        for r in receipts
    ])
    st.dataframe(df, use_container_width=True, hide_index=True)
    st.metric("Monthly Total", format_currency(view.get("monthly_total", 0), CURRENCY))

    st.divider()
    render_receipt_detail(receipts)


def render_receipt_detail(receipts: List[Dict[str, Any]]):
    """Individual receipt view, edit and delete"""
    st.subheader("🔍 Receipt Details")

    by_id = {r["id"]: r for r in receipts if r.get("id") is not None}
    if not by_id:
        return

    selected_id = st.selectbox(
        "Select receipt",
        list(by_id.keys()),
        format_func=lambda x: f"{by_id[x].get('date')} · {by_id[x].get('merchant_name')}",
        key="detail_selector",
    )
    r = by_id[selected_id]

    col1, col2 = st.columns([1, 1])
    with col1:
        st.write(f"**Merchant:** {r.get('merchant_name')}")
        st.write(f"**Date:** {r.get('date')}")
        st.write(f"**Total:** {format_currency(r.get('total'), CURRENCY)}")
        if r.get("notes"):
            st.write(f"**Notes:** {r.get('notes')}")
        if r.get("image_url"):
            st.link_button("View image", r["image_url"])
    with col2:
        items = r.get("items") or []
        if items:
            st.dataframe(
                pd.DataFrame([{"Item": i.get("name"), "Price": format_currency(i.get("price"), CURRENCY)} for i in items]),
                use_container_width=True,
                hide_index=True,
            )

    with st.expander("✏️ Edit", expanded=False):
        with st.form(f"edit_form_{selected_id}"):
            merchant = st.text_input("Merchant", value=str(r.get("merchant_name") or ""))
            date = st.text_input("Date", value=str(r.get("date") or ""), help="YYYY-MM-DD")
            total = st.number_input("Total", value=float(r.get("total") or 0), step=0.01, format="%.2f")
            notes = st.text_area("Notes", value=str(r.get("notes") or ""))
            items_text = st.text_area(
                "Items (one per line: name | price)",
                value="\n".join(f"{i.get('name')} | {float(i.get('price') or 0):.2f}" for i in items),
            )
            submitted = st.form_submit_button("💾 Save Changes", type="primary", use_container_width=True)

        if submitted:
            try:
                api_patch(
                    f"/receipts/{int(selected_id)}",
                    json_body={
                        "merchant_name": merchant.strip() or None,
                        "date": date.strip() or None,
                        "total": float(total),
                        "notes": notes.strip(),
                        "items": parse_items_text(items_text),
                    },
                )
                st.success("✅ Receipt updated")
                fetch_receipts_view.clear()
                time.sleep(1)
                st.rerun()
            except (RuntimeError, ValueError) as e:
                st.error(f"Update failed: {e}")

    if st.session_state.get("confirm_delete_id") == selected_id:
        st.warning("Delete this receipt? This cannot be undone.")
        c1, c2 = st.columns(2)
        with c1:
            if st.button("Yes, delete", type="primary", use_container_width=True):
                try:
                    api_delete(f"/receipts/{int(selected_id)}")
                    st.session_state["confirm_delete_id"] = None
                    fetch_receipts_view.clear()
                    st.rerun()
                except RuntimeError as e:
                    st.error(f"Delete failed: {e}")
        with c2:
            if st.button("Cancel", use_container_width=True):
                st.session_state["confirm_delete_id"] = None
                st.rerun()
    elif st.button("🗑️ Delete receipt"):
        st.session_state["confirm_delete_id"] = selected_id
        st.rerun()


def parse_items_text(text: str) -> List[Dict[str, Any]]:
    """'Tea | 4.00' lines -> [{'name': 'Tea', 'price': 4.0}]"""
    out = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        name, _, price = line.rpartition("|")
        if not name:
            name, price = price, "0"
        out.append({"name": name.strip(), "price": float(price.strip().replace(",", "") or 0)})
    return out

# =============================================================================
# Sidebar
# =============================================================================
def render_sidebar():
    """Application sidebar with user info and Sheets link"""
    with st.sidebar:
        st.title("🧾 Receipt Scanner")

        me = st.session_state.get("me") or {}
        st.markdown("### User")
        st.write(f"**Email:** {me.get('email', 'Not logged in')}")
        if not me.get("google_connected", True):
            st.warning("Google session expired. Sign in again to archive to Drive / Sheets.")

        st.divider()

        st.markdown("### Google Sheets")
        try:
            url = api_get("/sheets/url").get("url")
        except RuntimeError:
            url = None
        if url:
            st.link_button("Open spreadsheet", url, use_container_width=True)
            if st.button("Start a new spreadsheet", use_container_width=True):
                api_post("/sheets/reset")
                st.rerun()
        else:
            st.caption("A spreadsheet is created when you save your first receipt.")

        st.divider()

        if st.button("🚪 Logout", use_container_width=True):
            for key in list(st.session_state.keys()):
                del st.session_state[key]
            init_session_state()
            st.rerun()

        st.divider()
        st.caption(f"🔗 API: {API_BASE}")

# =============================================================================
# Main Application
# =============================================================================
def main():
    """Main application router"""
    pick_up_login_redirect()

    if not st.session_state.get("access_token"):
        render_auth_page()
        return

    render_sidebar()

    # radio instead of st.tabs so "View All Receipts" can switch views
    st.radio(
        "View",
        [SCANNER_TAB, RECEIPTS_TAB],
        key="active_tab",
        horizontal=True,
        label_visibility="collapsed",
    )

    if st.session_state["active_tab"] == RECEIPTS_TAB:
        render_receipts_tab()
    else:
        render_scanner_tab()


if __name__ == "__main__":
    main()
