"""GTK 4 front-end.

The engine runs on a worker thread.  Everything it reports is handed to the
GTK main loop with ``GLib.idle_add``; questions block the worker on a
:class:`threading.Event` until the operator answers the dialog.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from typing import Optional

import gi

gi.require_version("Gtk", "4.0")
from gi.repository import Gio, GLib, Gtk  # noqa: E402

from . import exit_codes  # noqa: E402
from .config import APP_ID, APP_NAME, Settings  # noqa: E402
from .engine import UpgradeEngine  # noqa: E402
from .pipeline import StageResult  # noqa: E402
from .presentation import LoggingPresentation, advisory_message  # noqa: E402

logger = logging.getLogger(__name__)


class GtkPresentation(LoggingPresentation):
    """Presentation that draws into :class:`MainWindow` from any thread."""

    def __init__(self, window: "MainWindow") -> None:
        super().__init__()
        self.window = window

    def state_changed(self, old: str, new: str) -> None:
        super().state_changed(old, new)
        GLib.idle_add(self.window.set_status, new.replace("-", " ").capitalize())

    def progress(self, fraction: float, label: str) -> None:
        GLib.idle_add(self.window.update_progress, fraction, label)

    def output(self, line: str) -> None:
        GLib.idle_add(self.window.append_text, line + "\n")

    def stage_finished(self, result: StageResult) -> None:
        super().stage_finished(result)
        GLib.idle_add(self.window.append_text, f"--- {result.name}: {result.status.value} ---\n")

    def advisory(self, result: StageResult) -> None:
        super().advisory(result)
        GLib.idle_add(self.window.append_text, f"WARNING: {advisory_message(result)}\n")

    def info(self, title: str, message: str) -> None:
        super().info(title, message)
        self._message(title, message)

    def warning(self, title: str, message: str) -> None:
        super().warning(title, message)
        self._message(title, message)

    def error(self, title: str, message: str) -> None:
        super().error(title, message)
        self._message(title, message)

    def show_text(self, title: str, text: str) -> None:
        super().show_text(title, text)
        GLib.idle_add(self.window.append_text, f"\n=== {title} ===\n{text}\n")

    def _message(self, title: str, message: str) -> None:
        done = threading.Event()
        GLib.idle_add(self.window.show_message, title, message, done)
        done.wait()

    def confirm(self, title: str, question: str) -> bool:
        self.questions.append(title)
        done = threading.Event()
        answer = {"ok": False}
        GLib.idle_add(self.window.ask, title, question, answer, done)
        done.wait()
        logger.info("%s: %s -> %s", title, question, "yes" if answer["ok"] else "no")
        return answer["ok"]


class MainWindow(Gtk.ApplicationWindow):
    def __init__(self, app: "ReleaseUpgradeApp") -> None:
        super().__init__(application=app)
        self.settings = app.settings
        self.set_title(APP_NAME)
        self.set_default_size(960, 680)
        self.set_icon_name("system-software-update")

        outer = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=8, margin_top=12, margin_bottom=12, margin_start=12, margin_end=12)
        self.set_child(outer)

        header = Gtk.Label(label=APP_NAME)
        header.set_justify(Gtk.Justification.CENTER)
        header.add_css_class("title-2")
        outer.append(header)

        self.status_label = Gtk.Label(label="Idle")
        outer.append(self.status_label)

        self.progress_label = Gtk.Label(label="0%")
        outer.append(self.progress_label)

        self.progress = Gtk.ProgressBar()
        self.progress.set_show_text(True)
        outer.append(self.progress)

        scroller = Gtk.ScrolledWindow()
        scroller.set_vexpand(True)
        scroller.set_policy(Gtk.PolicyType.NEVER, Gtk.PolicyType.AUTOMATIC)
        outer.append(scroller)

        self.buffer = Gtk.TextBuffer()
        self.textview = Gtk.TextView(buffer=self.buffer)
        self.textview.set_editable(False)
        self.textview.set_monospace(True)
        self.textview.set_wrap_mode(Gtk.WrapMode.WORD_CHAR)
        scroller.set_child(self.textview)

        btn_box = Gtk.Box(spacing=8)
        outer.append(btn_box)

        self.refresh_btn = Gtk.Button(label="Refresh Packages")
        self.refresh_btn.connect("clicked", lambda _b: self.start("refresh"))
        btn_box.append(self.refresh_btn)

        self.transition_btn = Gtk.Button(label="Major Upgrade")
        self.transition_btn.connect("clicked", lambda _b: self.start("transition"))
        btn_box.append(self.transition_btn)

        self.cancel_btn = Gtk.Button(label="Cancel")
        self.cancel_btn.connect("clicked", self.on_cancel)
        self.cancel_btn.set_sensitive(False)
        btn_box.append(self.cancel_btn)

        self.view_log_btn = Gtk.Button(label="View Log")
        self.view_log_btn.connect("clicked", self.on_view_log)
        btn_box.append(self.view_log_btn)

        self.presentation = GtkPresentation(self)
        self.engine: Optional[UpgradeEngine] = None
        self.exit_code = exit_codes.SUCCESS

    # UI callbacks
    def append_text(self, text: str):
        end = self.buffer.get_end_iter()
        self.buffer.insert(end, text)
        mark = self.buffer.create_mark(None, self.buffer.get_end_iter(), False)
        self.textview.scroll_to_mark(mark, 0.0, True, 0.0, 1.0)
        return False

    def update_progress(self, pct_float: float, label: str):
        pct = int(round(pct_float * 100))
        self.progress.set_fraction(pct_float)
        self.progress.set_text(f"{pct}%")
        self.progress_label.set_text(f"{pct}%: {label}" if label else f"{pct}%")
        return False

    def set_status(self, text: str):
        self.status_label.set_text(text)
        return False

    def show_message(self, title: str, message: str, done: threading.Event):
        dlg = Gtk.MessageDialog(transient_for=self, modal=True, buttons=Gtk.ButtonsType.CLOSE, text=title, secondary_text=message)

        def _resp(d, _resp_id):
            d.destroy()
            done.set()

        dlg.connect("response", _resp)
        dlg.present()
        return False

    def ask(self, title: str, question: str, answer: dict, done: threading.Event):
        dlg = Gtk.MessageDialog(transient_for=self, modal=True, buttons=Gtk.ButtonsType.NONE, text=title, secondary_text=question)
        dlg.add_button("No", Gtk.ResponseType.CANCEL)
        dlg.add_button("Yes", Gtk.ResponseType.OK)

        def _resp(d, resp):
            d.destroy()
            answer["ok"] = resp == Gtk.ResponseType.OK
            done.set()

        dlg.connect("response", _resp)
        dlg.present()
        return False

    def _set_busy(self, busy: bool) -> None:
        self.refresh_btn.set_sensitive(not busy)
        self.transition_btn.set_sensitive(not busy)
        self.cancel_btn.set_sensitive(busy)

    def start(self, action: str) -> None:
        self._set_busy(True)
        self.update_progress(0.0, "")
        self.append_text(f"Logging to: {self.settings.log_path}\n")
        engine = UpgradeEngine(self.settings, self.presentation)
        self.engine = engine

        def worker():
            operation = engine.refresh_packages if action == "refresh" else engine.major_transition
            try:
                code = operation()
            except Exception as e:
                logger.exception("%s failed: %s", action, e)
                code = exit_codes.FAILURE
            GLib.idle_add(self.on_complete, code)

        threading.Thread(target=worker, daemon=True).start()

    def on_complete(self, code: int):
        self.exit_code = code
        self._set_busy(False)
        self.engine = None
        if code == exit_codes.SUCCESS:
            self.progress_label.set_text("Finished.")
        else:
            self.progress_label.set_text("Finished with issues. Check the log.")
        return False

    def on_cancel(self, _btn):
        if self.engine is not None:
            self.append_text("Cancelling after the current step...\n")
            self.engine.cancel()
            self.cancel_btn.set_sensitive(False)

    def on_view_log(self, _btn):
        path = str(self.settings.log_path)
        try:
            subprocess.Popen(["xdg-open", path])
        except OSError:
            dlg = Gtk.MessageDialog(transient_for=self, modal=True, buttons=Gtk.ButtonsType.CLOSE, text=f"Log path: {path}")
            dlg.connect("response", lambda d, r: d.destroy())
            dlg.present()


class ReleaseUpgradeApp(Gtk.Application):
    def __init__(self, settings: Settings, action: Optional[str] = None) -> None:
        super().__init__(application_id=APP_ID, flags=Gio.ApplicationFlags.FLAGS_NONE)
        self.settings = settings
        self.action = action
        self.window: Optional[MainWindow] = None

    def do_activate(self, *args):
        win = self.props.active_window
        if not win:
            win = MainWindow(self)
            self.window = win
            if self.action:
                win.start(self.action)
        win.present()


def run_gui(settings: Settings, action: Optional[str] = None) -> int:
    app = ReleaseUpgradeApp(settings, action)
    app.run([])
    return app.window.exit_code if app.window else exit_codes.SUCCESS


__all__ = ["GtkPresentation", "MainWindow", "ReleaseUpgradeApp", "run_gui"]
