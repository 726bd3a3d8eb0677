# app.py
"""
CRTS desktop client (Cosmo theme). Students, staff and admins share one
entry point; each protected window is opened through a RoleGate.
Run: crts   (or python app.py)
"""
import logging
import tkinter as tk
from tkinter import filedialog, simpledialog
from typing import Optional

import ttkbootstrap as ttk
from ttkbootstrap.dialogs import Messagebox

import settings
from dashboards import DASHBOARDS, Onboarding
from errors import CrtsError
from firebase_client import FirebaseBackend
from forms import ComplaintForm, validate_attachment
from models import ADMIN, ALL, PRIORITIES, STAFF, STATUSES, STUDENT, FilterState
from queries import QueryClient
from query_cache import QueryCache
from role_gate import RenderDecision, RoleGate
from session import AuthSession
from tasks import BackgroundRunner, tk_scheduler, widget_alive

logger = logging.getLogger(__name__)


class AppContext:
    """Everything a window needs, created once in main()."""

    def __init__(self, root):
        self.root = root
        self.schedule = tk_scheduler(root)
        self.runner = BackgroundRunner(self.schedule)
        self.backend = FirebaseBackend()
        self.cache = QueryCache(max_age=settings.CACHE_MAX_AGE)
        self.auth = AuthSession(self.backend, token_file=settings.SESSION_FILE)
        self.queries = QueryClient(self.backend, self.cache)
        self.login_win: Optional[tk.Toplevel] = None
        self.main_win: Optional[tk.Toplevel] = None


ctx: Optional[AppContext] = None


# -----------------------
# Utility helpers
# -----------------------
def center_window(win, w=1100, h=700):
    try:
        win.update_idletasks()
        ws = win.winfo_screenwidth()
        hs = win.winfo_screenheight()
        win.geometry(f"{w}x{h}+{(ws - w) // 2}+{(hs - h) // 2}")
    except tk.TclError:
        pass


def show_toast(parent, message: str, duration: int = 2200):
    try:
        toast = tk.Toplevel(parent)
    except tk.TclError:
        return
    toast.overrideredirect(True)
    toast.attributes("-topmost", True)
    frame = ttk.Frame(toast, padding=(10, 6), bootstyle="secondary")
    frame.pack()
    ttk.Label(frame, text=message).pack()
    toast.update_idletasks()
    x = toast.winfo_screenwidth() - toast.winfo_reqwidth() - 20
    y = toast.winfo_screenheight() - toast.winfo_reqheight() - 60
    toast.geometry(f"+{x}+{y}")
    toast.after(duration, toast.destroy)


def show_loader(parent, text: str = "Please wait..."):
    try:
        loader = tk.Toplevel(parent)
    except tk.TclError:
        return None
    loader.title("")
    loader.geometry("320x110")
    loader.resizable(False, False)
    loader.attributes("-topmost", True)
    frm = ttk.Frame(loader, padding=12)
    frm.pack(fill="both", expand=True)
    ttk.Label(frm, text=text).pack(pady=(0, 8))
    pb = ttk.Progressbar(frm, mode="indeterminate", bootstyle="info")
    pb.pack(fill="x")
    pb.start(10)
    return loader


def close_loader(loader):
    if loader:
        try:
            loader.destroy()
        except tk.TclError:
            pass


def show_error(parent, message: str):
    parent = parent or ctx.main_win or ctx.login_win or ctx.root
    logger.error("%s", message)
    try:
        Messagebox.show_error(message, parent=parent)
    except tk.TclError:
        pass


def describe(exc: BaseException) -> str:
    if isinstance(exc, CrtsError):
        return exc.message
    return "Something went wrong. Please try again."


def run(win, func, on_done):
    """safe_run_in_thread: skip the callback if `win` was destroyed meanwhile."""
    return ctx.runner.run(func, on_done, alive=widget_alive(win) if win is not None else None)


def destroy(win):
    if win is not None:
        try:
            win.destroy()
        except tk.TclError:
            pass


# -----------------------
# Routing
# -----------------------
def route_home():
    """Signed-in users go to the dashboard of their effective role."""
    if ctx.auth.current_session() is None:
        open_login_window()
        return

    def done(role, exc):
        if exc:
            show_error(None, describe(exc))
            open_login_window()
            return
        open_dashboard(role or STUDENT)

    run(None, ctx.auth.fetch_role, done)


def sign_out():
    destroy(ctx.main_win)
    ctx.main_win = None
    ctx.auth.sign_out()
    ctx.cache.clear()
    open_login_window()


def session_changed(auth):
    # a refused token refresh ends the session from a worker thread
    if auth.current_session() is None and ctx.main_win is not None:
        ctx.schedule(session_expired)


def session_expired():
    if ctx.main_win is None:
        return
    destroy(ctx.main_win)
    ctx.main_win = None
    ctx.cache.clear()
    open_login_window("Your session has expired. Please sign in again.")


# -----------------------
# LOGIN WINDOW
# -----------------------
def open_login_window(message: Optional[str] = None):
    destroy(ctx.login_win)
    w = tk.Toplevel(ctx.root)
    ctx.login_win = w
    w.title("CRTS - Sign in")
    center_window(w, 500, 380)
    w.resizable(False, False)

    f = ttk.Frame(w, padding=18)
    f.pack(fill="both", expand=True)
    ttk.Label(f, text="Student Complaint System", font=("Segoe UI", 14, "bold")).grid(
        row=0, column=0, columnspan=2, pady=10)

    ttk.Label(f, text="Email:").grid(row=1, column=0, sticky="w")
    e_email = ttk.Entry(f, width=40)
    e_email.grid(row=1, column=1, pady=5)
    ttk.Label(f, text="Password:").grid(row=2, column=0, sticky="w")
    e_pwd = ttk.Entry(f, width=40, show="*")
    e_pwd.grid(row=2, column=1, pady=5)
    ttk.Label(f, text="Full Name (sign up):").grid(row=3, column=0, sticky="w")
    e_name = ttk.Entry(f, width=40)
    e_name.grid(row=3, column=1, pady=5)

    # errors are shown inline, not as dialogs
    error_var = tk.StringVar(value=message or "")
    ttk.Label(f, textvariable=error_var, bootstyle="danger", wraplength=420).grid(
        row=4, column=0, columnspan=2, sticky="w", pady=(6, 0))

    buttons = ttk.Frame(f)
    buttons.grid(row=5, column=1, sticky="e", pady=12)

    def busy(flag: bool):
        for child in buttons.winfo_children():
            child.config(state="disabled" if flag else "normal")

    def finish(_session, exc):
        busy(False)
        if exc:
            error_var.set(describe(exc))
            return
        destroy(w)
        ctx.login_win = None
        route_home()

    def do_login():
        error_var.set("")
        busy(True)
        email, pwd = e_email.get(), e_pwd.get()
        run(w, lambda: ctx.auth.sign_in(email, pwd), finish)

    def do_signup():
        error_var.set("")
        busy(True)
        email, pwd, name = e_email.get(), e_pwd.get(), e_name.get()
        run(w, lambda: ctx.auth.sign_up(email, pwd, name), finish)

    ttk.Button(buttons, text="Sign up", bootstyle="success", command=do_signup).pack(side="left", padx=5)
    ttk.Button(buttons, text="Sign in", bootstyle="primary", command=do_login).pack(side="left")

    def on_close():
        destroy(w)
        ctx.root.destroy()

    w.protocol("WM_DELETE_WINDOW", on_close)


# -----------------------
# MAIN WINDOW (role gated)
# -----------------------
def open_dashboard(role: str):
    destroy(ctx.main_win)
    w = tk.Toplevel(ctx.root)
    ctx.main_win = w
    w.title("CRTS")
    center_window(w, 1200, 750)
    state = {"dashboard": None, "rendered": False}

    placeholder = ttk.Frame(w, padding=40)
    placeholder.pack(fill="both", expand=True)
    ttk.Label(placeholder, text="Loading...", font=("Segoe UI", 12)).pack(pady=(0, 10))
    bar = ttk.Progressbar(placeholder, mode="indeterminate", bootstyle="info")
    bar.pack(fill="x")
    bar.start(10)

    def render(decision: RenderDecision):
        if not widget_alive(w)() or state["rendered"]:
            return
        if decision == RenderDecision.REDIRECT:
            denied = gate.denied.message if gate.denied else None
            gate.close()
            destroy(w)
            ctx.main_win = None
            open_login_window(denied)
        elif decision == RenderDecision.RENDER:
            state["rendered"] = True
            placeholder.destroy()
            dashboard = DASHBOARDS[role](ctx.queries, ctx.auth, ctx.runner)
            state["dashboard"] = dashboard
            build_dashboard(w, dashboard)

    gate = RoleGate(ctx.auth, ctx.runner, required_role=role,
                    on_change=lambda d: ctx.schedule(lambda: render(d)))

    def teardown(event=None):
        if event is not None and event.widget is not w:
            return
        gate.close()
        if state["dashboard"] is not None:
            state["dashboard"].close()

    def on_close():
        teardown()
        destroy(w)
        ctx.root.destroy()

    w.protocol("WM_DELETE_WINDOW", on_close)
    w.bind("<Destroy>", teardown)
    render(gate.evaluate())


def build_dashboard(w, dashboard):
    user = ctx.auth.current_session()
    w.title(f"CRTS - {dashboard.title}")

    top = ttk.Frame(w, padding=10)
    top.pack(fill="x")
    ttk.Label(top, text=f"{user.email}  |  Role: {dashboard.required_role}", font=("Segoe UI", 10)).pack(side="left")

    def logout():
        if Messagebox.yesno("Do you really want to sign out?", "Sign out", parent=w) == "Yes":
            dashboard.close()
            sign_out()

    ttk.Button(top, text="Sign out", bootstyle="outline-secondary", command=logout).pack(side="right")

    body = ttk.Frame(w)
    body.pack(fill="both", expand=True)
    sidebar = ttk.Frame(body, padding=10, width=220, bootstyle="secondary")
    sidebar.pack(side="left", fill="y")
    sidebar.pack_propagate(False)
    content = ttk.Frame(body, padding=10)
    content.pack(side="left", fill="both", expand=True)
    status_bar = ttk.Label(w, text="Ready", anchor="w", bootstyle="secondary")
    status_bar.pack(side="bottom", fill="x")

    def set_status(msg, style="secondary"):
        try:
            status_bar.config(text=msg, bootstyle=f"inverse-{style}")
        except tk.TclError:
            pass

    def clear_content():
        for child in content.winfo_children():
            destroy(child)

    views = [("Complaints", lambda: complaints_view(content, dashboard, set_status))]
    if dashboard.required_role == STUDENT:
        views.append(("New Complaint", lambda: new_complaint_view(content, dashboard, set_status)))
    if dashboard.required_role == ADMIN:
        views.append(("Analytics", lambda: analytics_view(content, dashboard)))
        views.append(("Users", lambda: users_view(content, dashboard, set_status)))
        views.append(("Departments", lambda: departments_view(content, dashboard, set_status)))
    views.append(("Profile", lambda: profile_view(content, dashboard, set_status)))
    views.append(("Settings", lambda: settings_view(content, dashboard, set_status)))

    def activate(btn, view):
        for child in sidebar.winfo_children():
            child.config(bootstyle="secondary-outline")
        btn.config(bootstyle="secondary")
        clear_content()
        view()

    for label, view in views:
        btn = ttk.Button(sidebar, text=label, bootstyle="secondary-outline")
        btn.config(command=lambda b=btn, v=view: activate(b, v))
        btn.pack(fill="x", pady=4)

    activate(sidebar.winfo_children()[0], views[0][1])
    maybe_show_onboarding(w, dashboard)


# -----------------------
# Views
# -----------------------
def complaints_view(content, dashboard, set_status):
    ttk.Label(content, text=dashboard.title, font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 8))
    store = dashboard.filters
    lookups = {"departments": [], "categories": [], "filters": []}

    bar = ttk.Frame(content)
    bar.pack(fill="x", pady=(4, 4))
    search_var = tk.StringVar()
    ttk.Label(bar, text="Search:").pack(side="left")
    ttk.Entry(bar, textvariable=search_var, width=24).pack(side="left", padx=(4, 10))
    combos = {}
    for name, values in (("status", (ALL,) + STATUSES), ("priority", (ALL,) + PRIORITIES),
                         ("department", (ALL,)), ("category", (ALL,))):
        ttk.Label(bar, text=f"{name.title()}:").pack(side="left")
        var = tk.StringVar(value=ALL)
        combo = ttk.Combobox(bar, textvariable=var, values=values, state="readonly", width=14)
        combo.pack(side="left", padx=(4, 10))
        combos[name] = (var, combo)

    saved_bar = ttk.Frame(content)
    saved_bar.pack(fill="x", pady=(0, 8))
    ttk.Label(saved_bar, text="Saved filters:").pack(side="left")
    saved_var = tk.StringVar()
    saved_combo = ttk.Combobox(saved_bar, textvariable=saved_var, state="readonly", width=24)
    saved_combo.pack(side="left", padx=(4, 8))

    table_frame = ttk.Frame(content)
    table_frame.pack(fill="both", expand=True)
    cols = ("cid", "title", "category", "department", "priority", "status", "created_at")
    tree = ttk.Treeview(table_frame, columns=cols, show="headings", height=18, bootstyle="info")
    tree.heading("cid", text="")
    tree.column("cid", width=0, stretch=False)
    for c in cols[1:]:
        tree.heading(c, text=c.replace("_", " ").title())
    tree.column("title", width=320)
    tree.pack(side="left", fill="both", expand=True)
    vsb = ttk.Scrollbar(table_frame, orient="vertical", command=tree.yview)
    tree.configure(yscrollcommand=vsb.set)
    vsb.pack(side="right", fill="y")

    rows = {"items": []}

    def current_filter() -> FilterState:
        def pick(name, options, key="id"):
            value = combos[name][0].get()
            match = next((str(o[key]) for o in options if o.get("name") == value), None)
            return match or ALL

        return FilterState(
            search=search_var.get(),
            status=combos["status"][0].get() or ALL,
            priority=combos["priority"][0].get() or ALL,
            department=pick("department", lookups["departments"]),
            category=pick("category", lookups["categories"]),
        )

    syncing = {"on": False}

    def show_filter(state: FilterState):
        syncing["on"] = True
        try:
            search_var.set(state.search)
        finally:
            syncing["on"] = False
        combos["status"][0].set(state.status)
        combos["priority"][0].set(state.priority)
        names = {str(d["id"]): d["name"] for d in lookups["departments"]}
        combos["department"][0].set(names.get(state.department, ALL))
        names = {str(c["id"]): c["name"] for c in lookups["categories"]}
        combos["category"][0].set(names.get(state.category, ALL))
        populate()

    def populate():
        for r in tree.get_children():
            tree.delete(r)
        for d in rows["items"]:
            if not store.active.matches(d):
                continue
            tree.insert("", tk.END, values=(
                d["id"], d.get("title", "")[:80], d.get("category_name", ""), d.get("department_name", ""),
                d.get("priority", ""), d.get("status", "").replace("_", " "), (d.get("created_at") or "")[:16],
            ))

    def on_filter_edit(*_):
        if syncing["on"]:
            return
        store.set_active(current_filter())

    search_var.trace_add("write", on_filter_edit)
    for var, combo in combos.values():
        combo.bind("<<ComboboxSelected>>", on_filter_edit)
    cleanup = [store.add_listener(lambda state: ctx.schedule(lambda: widget_alive(tree)() and show_filter(state)))]

    def reload():
        set_status("Loading complaints...", "info")

        def work():
            return dashboard.list_complaints(ALL), dashboard.departments(), dashboard.categories(), store.list()

        def done(res, exc):
            if exc:
                set_status("Failed to load complaints", "danger")
                show_error(content.winfo_toplevel(), describe(exc))
                return
            rows["items"], lookups["departments"], lookups["categories"], lookups["filters"] = res
            combos["department"][1].config(values=(ALL,) + tuple(d["name"] for d in lookups["departments"]))
            combos["category"][1].config(values=(ALL,) + tuple(c["name"] for c in lookups["categories"]))
            saved_combo.config(values=[
                f"{f.name} (default)" if f.is_default else f.name for f in lookups["filters"]])
            show_filter(store.active)
            set_status(f"Loaded {len(rows['items'])} complaints", "secondary")

        run(tree, work, done)

    def selected_saved():
        idx = saved_combo.current()
        return lookups["filters"][idx] if 0 <= idx < len(lookups["filters"]) else None

    def after_change(_res, exc):
        if exc:
            show_error(content.winfo_toplevel(), describe(exc))
            return
        reload()

    def save_filter():
        name = simpledialog.askstring("Save filter", "Filter name:", parent=content)
        if name is None:
            return
        state = current_filter()
        run(tree, lambda: store.save(name, state), after_change)

    def load_filter():
        saved = selected_saved()
        if saved:
            run(tree, lambda: store.load(saved.id), lambda _r, exc: exc and show_error(None, describe(exc)))

    def delete_filter():
        saved = selected_saved()
        if saved:
            run(tree, lambda: store.delete(saved.id), after_change)

    def default_filter():
        saved = selected_saved()
        if saved:
            run(tree, lambda: store.set_default(saved.id), after_change)

    for text, cmd in (("Load", load_filter), ("Save current", save_filter),
                      ("Make default", default_filter), ("Delete", delete_filter),
                      ("Reset", store.reset), ("Refresh", reload)):
        ttk.Button(saved_bar, text=text, bootstyle="outline-secondary", command=cmd).pack(side="left", padx=2)

    bottom = ttk.Frame(content)
    bottom.pack(fill="x", pady=(6, 0))

    def show_detail(_event=None):
        sel = tree.focus()
        if not sel:
            show_error(content.winfo_toplevel(), "Select a complaint from the list.")
            return
        open_detail(content.winfo_toplevel(), dashboard, tree.item(sel, "values")[0])

    ttk.Button(bottom, text="View Details", bootstyle="secondary", command=show_detail).pack(side="left")
    tree.bind("<Double-1>", show_detail)

    for prefix in (("complaints",), ("staff-complaints",), ("admin-complaints",)):
        cleanup.append(dashboard.watch(prefix, lambda: ctx.schedule(reload)))
    # view switched away: stop listening
    tree.bind("<Destroy>", lambda e: [undo() for undo in cleanup])

    def first_load():
        run(tree, store.apply_default, lambda _r, _e: reload())

    first_load()


def open_detail(parent, dashboard, cid):
    win = tk.Toplevel(parent)
    win.title(f"Complaint {cid}")
    center_window(win, 900, 650)
    loader = show_loader(win, "Loading complaint...")

    left = ttk.Frame(win, padding=10)
    left.pack(side="left", fill="both", expand=True)
    right = ttk.Labelframe(win, text="Messages", padding=10)
    right.pack(side="left", fill="both", expand=True)

    def fill(res, exc):
        close_loader(loader)
        if exc:
            show_error(win, describe(exc))
            destroy(win)
            return
        c = res["complaint"]
        ttk.Label(left, text=c.title, font=("Segoe UI", 14, "bold"), wraplength=400).pack(anchor="w")
        ttk.Label(left, text=f"Category: {res['category_name']} | Department: {res['department_name']}").pack(anchor="w")
        ttk.Label(left, text=f"Priority: {c.priority} | Status: {c.status.replace('_', ' ')}").pack(anchor="w", pady=4)
        txt = tk.Text(left, height=6, wrap="word")
        txt.pack(fill="x", pady=4)
        txt.insert("1.0", c.description)
        txt.config(state=tk.DISABLED)
        if c.attachment_url:
            ttk.Label(left, text=f"Attachment: {c.attachment_url}", wraplength=400).pack(anchor="w")

        ttk.Label(left, text="History:", font=("Segoe UI", 11, "underline")).pack(anchor="w", pady=(8, 0))
        history = tk.Listbox(left, height=5)
        history.pack(fill="x")
        for entry in res["status_log"]:
            history.insert(tk.END, f"[{(entry.get('timestamp') or '')[:16]}] {entry.get('status')} "
                                   f"by {entry.get('updated_by_name', '')} - {entry.get('note') or ''}")

        ttk.Label(left, text="Comments:", font=("Segoe UI", 11, "underline")).pack(anchor="w", pady=(8, 0))
        comments = tk.Listbox(left, height=5)
        comments.pack(fill="x")
        for comment in res["comments"]:
            comments.insert(tk.END, f"[{(comment.get('created_at') or '')[:16]}] {comment.get('comment_text')}")

        if dashboard.required_role in (STAFF, ADMIN):
            # shown to staff/admin only; the backend decides whether the write is allowed
            row = ttk.Frame(left)
            row.pack(fill="x", pady=6)
            status_var = tk.StringVar(value=c.status)
            ttk.Combobox(row, textvariable=status_var, values=STATUSES, state="readonly", width=14).pack(side="left")
            note_var = tk.StringVar()
            ttk.Entry(row, textvariable=note_var, width=24).pack(side="left", padx=4)

            def update_status():
                st, note = status_var.get(), note_var.get()
                run(win, lambda: dashboard.update_status(cid, st, note),
                    lambda _r, exc: show_error(win, describe(exc)) if exc else show_toast(win, "Status updated."))

            ttk.Button(row, text="Update Status", bootstyle="primary", command=update_status).pack(side="left")

            comment_var = tk.StringVar()
            crow = ttk.Frame(left)
            crow.pack(fill="x")
            ttk.Entry(crow, textvariable=comment_var, width=40).pack(side="left")

            def post_comment():
                text = comment_var.get()
                run(win, lambda: dashboard.add_comment(cid, text),
                    lambda _r, exc: show_error(win, describe(exc)) if exc else comment_var.set(""))

            ttk.Button(crow, text="Comment", bootstyle="secondary", command=post_comment).pack(side="left", padx=4)

    run(win, lambda: dashboard.detail(cid), fill)

    # --- chat ---
    chat = tk.Listbox(right, height=20)
    chat.pack(fill="both", expand=True)
    msg_var = tk.StringVar()
    entry = ttk.Entry(right, textvariable=msg_var)
    entry.pack(fill="x", pady=(6, 0))

    def show_messages(messages):
        chat.delete(0, tk.END)
        for m in messages:
            who = "You" if thread.is_mine(m) else "Them"
            chat.insert(tk.END, f"{m.created_at[11:16]} {who}: {m.content}")
        chat.see(tk.END)

    thread = dashboard.open_thread(
        cid,
        on_messages=show_messages,
        on_error=lambda exc: show_error(win, describe(exc)),
    )

    def send(_event=None):
        content = msg_var.get()
        if not content.strip():
            return
        thread.send(content, lambda _r, exc: show_error(win, "Failed to send message") if exc else msg_var.set(""))

    entry.bind("<Return>", send)
    ttk.Button(right, text="Send", bootstyle="primary", command=send).pack(anchor="e", pady=4)

    def on_destroy(event):
        # runs however the window goes away, a failed load included
        if event.widget is win:
            dashboard.close_thread(thread)

    win.bind("<Destroy>", on_destroy)
    win.protocol("WM_DELETE_WINDOW", lambda: destroy(win))


def new_complaint_view(content, dashboard, set_status):
    ttk.Label(content, text="Submit New Complaint", font=("Segoe UI", 16, "bold")).pack(anchor="w", pady=(0, 12))
    form = ttk.Frame(content)
    form.pack(fill="both", expand=True, padx=10, pady=6)
    categories = {"items": []}
    attachment = {"value": None}

    ttk.Label(form, text="Title *").grid(row=0, column=0, sticky="w", pady=4)
    title_var = tk.StringVar()
    ttk.Entry(form, textvariable=title_var, width=60).grid(row=0, column=1, sticky="w", pady=4)
    ttk.Label(form, text="Category *").grid(row=1, column=0, sticky="w", pady=4)
    category_combo = ttk.Combobox(form, state="readonly", width=40)
    category_combo.grid(row=1, column=1, sticky="w", pady=4)
    ttk.Label(form, text="Priority").grid(row=2, column=0, sticky="w", pady=4)
    priority_var = tk.StringVar(value="medium")
    ttk.Combobox(form, textvariable=priority_var, values=PRIORITIES, state="readonly", width=14).grid(
        row=2, column=1, sticky="w", pady=4)
    ttk.Label(form, text="Description *").grid(row=3, column=0, sticky="nw", pady=(6, 4))
    desc_text = tk.Text(form, width=72, height=10, wrap="word")
    desc_text.grid(row=3, column=1, pady=(0, 8))
    error_var = tk.StringVar()
    ttk.Label(form, textvariable=error_var, bootstyle="danger").grid(row=5, column=1, sticky="w")
    file_label = ttk.Label(form, text="No file (max 5MB: JPEG, PNG, PDF)")
    file_label.grid(row=4, column=1, sticky="w")

    def choose_file():
        path = filedialog.askopenfilename(filetypes=[("Images and PDF", "*.jpg *.jpeg *.png *.pdf")])
        if not path:
            return
        try:
            with open(path, "rb") as fh:
                attachment["value"] = validate_attachment(path, fh.read())
        except (OSError, CrtsError) as exc:
            attachment["value"] = None
            error_var.set(describe(exc) if isinstance(exc, CrtsError) else str(exc))
            return
        file_label.config(text=attachment["value"].filename)

    ttk.Button(form, text="Attach file", bootstyle="outline-secondary", command=choose_file).grid(
        row=4, column=0, sticky="w")

    def load_categories(res, exc):
        if exc:
            show_error(content.winfo_toplevel(), describe(exc))
            return
        categories["items"] = res
        category_combo.config(values=[f"{c['name']} ({c.get('department_name', '')})" for c in res])

    run(category_combo, dashboard.categories, load_categories)

    submit_btn = ttk.Button(form, text="Submit Complaint", bootstyle="primary")
    submit_btn.grid(row=6, column=1, sticky="e", pady=(6, 0))

    def submit():
        error_var.set("")
        idx = category_combo.current()
        category_id = str(categories["items"][idx]["id"]) if idx >= 0 else ""
        data = ComplaintForm(
            title=title_var.get(),
            category_id=category_id,
            description=desc_text.get("1.0", "end"),
            priority=priority_var.get(),
            attachment=attachment["value"],
        )
        submit_btn.config(state="disabled", text="Submitting...")

        def done(_res, exc):
            submit_btn.config(state="normal", text="Submit Complaint")
            if exc:
                error_var.set(describe(exc))
                return
            title_var.set("")
            desc_text.delete("1.0", "end")
            attachment["value"] = None
            file_label.config(text="No file")
            show_toast(content.winfo_toplevel(), "Your complaint has been submitted successfully.")
            set_status("Complaint submitted", "success")

        run(submit_btn, lambda: dashboard.submit(data), done)

    submit_btn.config(command=submit)


def analytics_view(content, dashboard):
    ttk.Label(content, text="Analytics", font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 10))
    out = tk.Text(content, height=30, wrap="word")
    out.pack(fill="both", expand=True)

    def fill(res, exc):
        if exc:
            show_error(content.winfo_toplevel(), describe(exc))
            return
        lines = [f"Total complaints: {res['total']}  (resolution rate {res['resolution_rate']}%)", ""]
        for title, key in (("By status", "by_status"), ("By priority", "by_priority"),
                           ("By department", "by_department")):
            lines.append(title)
            lines.extend(f"  {k}: {v}" for k, v in res[key].items())
            lines.append("")
        lines.append("Daily trend (total / resolved)")
        lines.extend(f"  {day}: {v['total']} / {v['resolved']}" for day, v in res["trend"].items())
        out.insert("1.0", "\n".join(lines))
        out.config(state=tk.DISABLED)

    run(out, dashboard.analytics, fill)


def users_view(content, dashboard, set_status):
    ttk.Label(content, text="Users", font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 10))
    cols = ("uid", "name", "email", "role", "department")
    tv = ttk.Treeview(content, columns=cols, show="headings", height=18)
    for c in cols:
        tv.heading(c, text=c.title())
        tv.column(c, width=160)
    tv.pack(fill="both", expand=True)
    departments = {"items": []}

    def reload():
        def done(res, exc):
            if exc:
                show_error(content.winfo_toplevel(), describe(exc))
                return
            users, departments["items"] = res
            for r in tv.get_children():
                tv.delete(r)
            for u in users:
                tv.insert("", tk.END, values=(u["id"], u.get("name", ""), u.get("email", ""),
                                              u.get("role") or "", u.get("department_name", "")))

        run(tv, lambda: (dashboard.users(), dashboard.departments()), done)

    def selected_uid():
        sel = tv.focus()
        if not sel:
            show_error(content.winfo_toplevel(), "Select user row")
            return None
        return tv.item(sel, "values")[0]

    def after(msg):
        def done(_res, exc):
            if exc:
                show_error(content.winfo_toplevel(), describe(exc))
                return
            set_status(msg, "success")
            reload()
        return done

    def change_role():
        uid = selected_uid()
        if not uid:
            return
        new = simpledialog.askstring("Role", "Enter new role (student/staff/admin):", parent=content)
        if new is None:
            return
        run(tv, lambda: dashboard.set_user_role(uid, new.strip().lower()), after("Role updated"))

    def change_department():
        uid = selected_uid()
        if not uid:
            return
        names = ", ".join(d["name"] for d in departments["items"])
        name = simpledialog.askstring("Department", f"Department name ({names}), empty for none:", parent=content)
        if name is None:
            return
        match = next((d["id"] for d in departments["items"] if d["name"] == name.strip()), None)
        if name.strip() and match is None:
            show_error(content.winfo_toplevel(), "Unknown department")
            return
        run(tv, lambda: dashboard.set_user_department(uid, match), after("Department updated"))

    row = ttk.Frame(content)
    row.pack(fill="x", pady=6)
    ttk.Button(row, text="Change Role", command=change_role).pack(side="left")
    ttk.Button(row, text="Change Department", command=change_department).pack(side="left", padx=6)
    reload()


def departments_view(content, dashboard, set_status):
    ttk.Label(content, text="Departments", font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 10))
    lb = tk.Listbox(content, height=16)
    lb.pack(fill="both", expand=True)
    items = {"rows": []}

    def reload():
        def done(res, exc):
            if exc:
                show_error(content.winfo_toplevel(), describe(exc))
                return
            items["rows"] = res
            lb.delete(0, tk.END)
            for d in res:
                lb.insert(tk.END, d["name"])

        run(lb, dashboard.departments, done)

    def selected():
        sel = lb.curselection()
        return items["rows"][sel[0]] if sel else None

    def done(msg):
        def cb(_res, exc):
            if exc:
                show_error(content.winfo_toplevel(), describe(exc))
                return
            set_status(msg, "success")
            reload()
        return cb

    def add():
        name = simpledialog.askstring("Department", "Department name:", parent=content)
        if name is not None:
            run(lb, lambda: dashboard.create_department(name), done("Department created"))

    def rename():
        d = selected()
        if d:
            name = simpledialog.askstring("Department", "New name:", initialvalue=d["name"], parent=content)
            if name is not None:
                run(lb, lambda: dashboard.rename_department(d["id"], name), done("Department updated"))

    def remove():
        d = selected()
        if d and Messagebox.yesno(f"Delete {d['name']}?", "Delete", parent=content) == "Yes":
            run(lb, lambda: dashboard.delete_department(d["id"]), done("Department deleted"))

    row = ttk.Frame(content)
    row.pack(fill="x", pady=6)
    for text, cmd in (("Add", add), ("Rename", rename), ("Delete", remove)):
        ttk.Button(row, text=text, command=cmd).pack(side="left", padx=2)
    reload()


def profile_view(content, dashboard, set_status):
    ttk.Label(content, text="Profile", font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 10))
    frm = ttk.Frame(content)
    frm.pack(anchor="w")
    name_var, reg_var, error_var = tk.StringVar(), tk.StringVar(), tk.StringVar()
    ttk.Label(frm, text="Name").grid(row=0, column=0, sticky="w", pady=4)
    ttk.Entry(frm, textvariable=name_var, width=40).grid(row=0, column=1, pady=4)
    ttk.Label(frm, text="Register number").grid(row=1, column=0, sticky="w", pady=4)
    ttk.Entry(frm, textvariable=reg_var, width=40).grid(row=1, column=1, pady=4)
    ttk.Label(frm, textvariable=error_var, bootstyle="danger").grid(row=3, column=1, sticky="w")

    def fill(res, exc):
        if exc:
            show_error(content.winfo_toplevel(), describe(exc))
            return
        name_var.set(res.get("name", ""))
        reg_var.set(res.get("register_number") or "")

    def save():
        error_var.set("")
        name, reg = name_var.get(), reg_var.get()

        def done(_res, exc):
            if exc:
                error_var.set(describe(exc))
                return
            set_status("Profile updated successfully.", "success")

        run(frm, lambda: dashboard.update_profile(name, reg), done)

    ttk.Button(frm, text="Save", bootstyle="primary", command=save).grid(row=2, column=1, sticky="e", pady=8)
    run(frm, dashboard.profile, fill)


def settings_view(content, dashboard, set_status):
    ttk.Label(content, text="Notification Settings", font=("Segoe UI", 14, "bold")).pack(anchor="w", pady=(0, 10))
    labels = {
        "status_updates": "Status updates on my complaints",
        "new_comments": "New comments",
        "assigned_complaints": "Complaints assigned to my department",
        "email_notifications": "Also send notifications by email",
    }
    variables = {key: tk.BooleanVar() for key in labels}

    def save(*_):
        prefs = {k: v.get() for k, v in variables.items()}

        def done(_res, exc):
            if exc:
                show_error(content.winfo_toplevel(), "Failed to update preferences. Please try again.")
                run(content, dashboard.notification_preferences, fill)
                return
            set_status("Your notification settings have been saved.", "success")

        run(content, lambda: dashboard.save_notification_preferences(prefs), done)

    for key, text in labels.items():
        ttk.Checkbutton(content, text=text, variable=variables[key], bootstyle="round-toggle",
                        command=save).pack(anchor="w", pady=4)

    def fill(res, exc):
        if exc:
            show_error(content.winfo_toplevel(), describe(exc))
            return
        for key, value in res.items():
            variables[key].set(value)

    run(content, dashboard.notification_preferences, fill)


def maybe_show_onboarding(w, dashboard):
    tour = Onboarding(ctx.queries, dashboard.user_id)

    def show(should, exc):
        if exc or not should:
            return
        win = tk.Toplevel(w)
        win.title("Getting started")
        center_window(win, 460, 240)
        title = ttk.Label(win, font=("Segoe UI", 13, "bold"))
        title.pack(anchor="w", padx=14, pady=(14, 4))
        body = ttk.Label(win, wraplength=420, justify="left")
        body.pack(anchor="w", padx=14)
        progress = ttk.Progressbar(win, bootstyle="info")
        progress.pack(fill="x", padx=14, pady=10)

        def refresh():
            if not tour.open:
                destroy(win)
                return
            title.config(text=tour.step[0])
            body.config(text=tour.step[1])
            progress.config(value=tour.progress)

        def step(action):
            run(win, action, lambda _r, exc: show_error(win, describe(exc)) if exc else refresh())

        row = ttk.Frame(win)
        row.pack(fill="x", padx=14, pady=6)
        ttk.Button(row, text="Skip", bootstyle="outline-secondary", command=lambda: step(tour.skip)).pack(side="left")
        ttk.Button(row, text="Next", bootstyle="primary", command=lambda: step(tour.next)).pack(side="right")
        refresh()

    run(w, tour.check, show)


def main():
    global ctx
    settings.configure_logging()
    root = tk.Tk()
    root.withdraw()  # hidden root, used only for event loop / after
    ttk.Style(theme=settings.THEME)
    ctx = AppContext(root)
    ctx.auth.add_listener(session_changed)

    splash = show_loader(root, "Starting...")

    def started(_user, exc):
        close_loader(splash)
        if exc:
            show_error(root, describe(exc))
        route_home()

    ctx.runner.run(ctx.auth.init, started)
    try:
        root.mainloop()
    finally:
        ctx.auth.backend.unbind_user()


if __name__ == "__main__":
    main()
