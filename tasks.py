# tasks.py
import logging
import threading
import traceback
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

OnDone = Callable[[Any, Optional[BaseException]], None]


class BackgroundRunner:
    """
    Run func() in background, callback on the UI loop via `schedule`.

    `schedule(cb)` must arrange for cb() to run on the UI thread (for tkinter:
    root.after). The callback is skipped when `alive()` says the owner is
    gone, so results never land on a torn-down view.
    """

    def __init__(self, schedule: Callable[[Callable[[], None]], None]):
        self._schedule = schedule

    def run(self, func: Callable[[], Any], on_done: Optional[OnDone] = None,
            alive: Optional[Callable[[], bool]] = None) -> threading.Thread:
        def worker():
            res = None
            exc = None
            try:
                res = func()
            except Exception as e:
                exc = e

            def cb():
                if alive is not None:
                    try:
                        if not alive():
                            return
                    except Exception:
                        return
                if on_done:
                    try:
                        on_done(res, exc)
                    except Exception:
                        logger.error("Error in on_done:\n%s", traceback.format_exc())

            try:
                self._schedule(cb)
            except Exception:
                # UI loop already gone
                logger.debug("Dropping callback, scheduler unavailable", exc_info=True)

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        return thread


def tk_scheduler(root) -> Callable[[Callable[[], None]], None]:
    import tkinter as tk

    def schedule(cb, delay=1):
        try:
            root.after(delay, cb)
        except tk.TclError:
            pass

    return schedule


def widget_alive(widget) -> Callable[[], bool]:
    """alive() predicate for a tkinter window."""
    import tkinter as tk

    def alive():
        try:
            return bool(widget.winfo_exists())
        except tk.TclError:
            return False

    return alive
