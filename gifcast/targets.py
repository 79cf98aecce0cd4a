"""Capture target selection.

Two concerns live here: deciding whether the focused surface may be
recorded, and (for the native controller) guessing which browser window the
user means. The guess is best effort; swap ``rank`` in ``pick_browser_window``
for a smarter ranking if needed.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, List, Optional

import mss

from .errors import TargetUnavailable
from .models import Bounds, CaptureTarget, Surface, Viewport

try:
    import win32api, win32con, win32gui, win32process
    HAS_WIN32 = True
except ImportError:
    HAS_WIN32 = False

log = logging.getLogger(__name__)

PRIVILEGED_SCHEMES = (
    "chrome://", "chrome-extension://", "chrome-untrusted://", "devtools://",
    "edge://", "brave://", "opera://", "vivaldi://", "about:", "view-source:",
    "moz-extension://",
)

EXCLUDED_APPLICATIONS = frozenset({
    "lockapp.exe", "logonui.exe", "credentialuibroker.exe",
    "com.apple.loginwindow", "com.apple.securityagent",
})

# Chromium-family browsers, by macOS bundle id and Windows/Linux executable.
BROWSER_IDENTITIES = frozenset({
    "com.google.chrome", "com.google.chrome.canary", "company.thebrowser.browser",
    "com.brave.browser", "com.microsoft.edgemac", "org.chromium.chromium",
    "com.vivaldi.vivaldi", "com.operasoftware.opera",
    "chrome.exe", "msedge.exe", "brave.exe", "vivaldi.exe", "opera.exe",
    "arc.exe", "chromium.exe",
    "chrome", "google-chrome", "chromium", "chromium-browser", "brave", "vivaldi",
})

MIN_WINDOW_SIDE = 100


# ════════════════════════════════════════════════════════════════
#  RECORDABILITY
# ════════════════════════════════════════════════════════════════

def _same_surface(a: Optional[Surface], b: Optional[Surface]) -> bool:
    return a is not None and b is not None and a.handle == b.handle


def evaluate(surface: Optional[Surface], monitor: Optional[Surface] = None,
             excluded=EXCLUDED_APPLICATIONS) -> CaptureTarget:
    """Wrap ``surface`` as a CaptureTarget with its ``recordable`` verdict."""
    if surface is None:
        return CaptureTarget(Surface(None, ""), False, "no active surface")
    if _same_surface(surface, monitor):
        return CaptureTarget(surface, False, "this is the control window")
    identity = (surface.identity or "").strip()
    if not identity:
        return CaptureTarget(surface, False, "surface has no identity")
    lowered = identity.lower()
    if lowered.startswith(PRIVILEGED_SCHEMES):
        return CaptureTarget(surface, False, "privileged page")
    if lowered in excluded:
        return CaptureTarget(surface, False, "excluded application")
    if surface.bounds is not None and surface.bounds.area == 0:
        return CaptureTarget(surface, False, "surface has no visible area")
    return CaptureTarget(surface, True)


def is_recordable(surface, monitor=None) -> bool:
    return evaluate(surface, monitor).recordable


# ════════════════════════════════════════════════════════════════
#  BROWSER WINDOW HEURISTIC
# ════════════════════════════════════════════════════════════════

def is_browser_window(surface: Surface, min_side=MIN_WINDOW_SIDE) -> bool:
    b = surface.bounds
    return (surface.identity.lower() in BROWSER_IDENTITIES
            and b is not None and b.width > min_side and b.height > min_side)


def largest_first(windows: Iterable[Surface]) -> List[Surface]:
    return sorted(windows, key=lambda w: w.bounds.area, reverse=True)


def pick_browser_window(windows: Iterable[Surface],
                        rank: Callable[[Iterable[Surface]], List[Surface]] = largest_first
                        ) -> Surface:
    candidates = [w for w in windows if is_browser_window(w)]
    log.info("Found %d browser windows", len(candidates))
    ranked = rank(candidates)
    if not ranked:
        raise TargetUnavailable("No browser window found. Make sure your browser is open.")
    return ranked[0]


def content_region(window: Bounds, viewport: Optional[Viewport]) -> Bounds:
    """Narrow a browser window to its page area using the reported viewport.

    Browser chrome sits on top; side borders are assumed symmetric. Sizes in
    the viewport are CSS pixels, so they are scaled by the pixel ratio.
    """
    if viewport is None:
        return window
    ratio = viewport.device_pixel_ratio or 1.0
    width = min(window.width, int(viewport.inner_width * ratio))
    height = min(window.height, int(viewport.inner_height * ratio))
    side = max(0, (window.width - width) // 2)
    top = max(0, window.height - height - side)
    return Bounds(window.left + side, window.top + top, width, height)


def even(bounds: Bounds) -> Bounds:
    """Round the size down to even numbers, which H.264 requires."""
    return Bounds(bounds.left, bounds.top, bounds.width // 2 * 2, bounds.height // 2 * 2)


# ════════════════════════════════════════════════════════════════
#  SURFACE PROVIDERS
# ════════════════════════════════════════════════════════════════

class SurfaceProvider:
    """Where surfaces come from. Subclasses talk to the window system."""

    def active(self) -> Optional[Surface]:
        raise NotImplementedError

    def monitor(self) -> Optional[Surface]:
        return None

    def activate(self, surface: Optional[Surface]):
        """Bring ``surface`` to the front, where the platform allows it."""

    def bounds(self, handle) -> Optional[Bounds]:
        """Current bounds of ``handle``, or None once it has closed."""
        raise NotImplementedError

    def windows(self) -> List[Surface]:
        return []


class StaticSurfaceProvider(SurfaceProvider):
    """Fixed set of surfaces; used for scripted runs and tests."""

    def __init__(self, surfaces=(), active=None, monitor=None):
        self.surfaces = {s.handle: s for s in surfaces}
        self.active_handle = active
        self.monitor_surface = monitor

    def focus(self, handle):
        self.active_handle = handle

    def activate(self, surface):
        if surface is not None:
            self.focus(surface.handle)

    def close(self, handle):
        self.surfaces.pop(handle, None)
        if self.active_handle == handle:
            self.active_handle = None

    def active(self):
        return self.surfaces.get(self.active_handle)

    def monitor(self):
        return self.monitor_surface

    def bounds(self, handle):
        surface = self.surfaces.get(handle)
        return surface.bounds if surface else None

    def windows(self):
        return list(self.surfaces.values())


class ScreenSurfaceProvider(SurfaceProvider):
    """One surface per physical monitor, for hosts without a window API."""

    def __init__(self, monitor_idx=1):
        self.monitor_idx = monitor_idx

    def _monitors(self):
        with mss.mss() as sct:
            return sct.monitors

    def active(self):
        mons = self._monitors()
        idx = self.monitor_idx if self.monitor_idx < len(mons) else 1
        mon = mons[idx]
        return Surface(f"screen:{idx}", f"screen:{idx}", f"Monitor {idx}",
                       Bounds(mon["left"], mon["top"], mon["width"], mon["height"]))

    def bounds(self, handle):
        idx = int(str(handle).split(":", 1)[1])
        mons = self._monitors()
        if idx >= len(mons):
            return None
        mon = mons[idx]
        return Bounds(mon["left"], mon["top"], mon["width"], mon["height"])

    def windows(self):
        return [self.active()]


class Win32SurfaceProvider(SurfaceProvider):
    """Top-level windows via pywin32. The console we run in is the monitor."""

    def __init__(self, monitor_handle=None):
        if not HAS_WIN32:
            raise RuntimeError("pywin32 is required for window capture")
        self.monitor_handle = monitor_handle or self._console_window()

    @staticmethod
    def _console_window():
        try:
            import win32console
            return win32console.GetConsoleWindow() or None
        except Exception:
            log.debug("no console window", exc_info=True)
            return None

    @staticmethod
    def _owner(hwnd) -> str:
        try:
            _, pid = win32process.GetWindowThreadProcessId(hwnd)
            proc = win32api.OpenProcess(
                win32con.PROCESS_QUERY_INFORMATION | win32con.PROCESS_VM_READ, False, pid)
            try:
                return os.path.basename(win32process.GetModuleFileNameEx(proc, 0)).lower()
            finally:
                win32api.CloseHandle(proc)
        except Exception:
            return ""

    def _surface(self, hwnd) -> Optional[Surface]:
        if not hwnd or not win32gui.IsWindow(hwnd):
            return None
        return Surface(hwnd, self._owner(hwnd), win32gui.GetWindowText(hwnd),
                       self.bounds(hwnd))

    def active(self):
        return self._surface(win32gui.GetForegroundWindow())

    def monitor(self):
        return self._surface(self.monitor_handle)

    def activate(self, surface):
        if surface is None or not win32gui.IsWindow(surface.handle):
            return
        try:
            win32gui.SetForegroundWindow(surface.handle)
        except win32gui.error:
            log.debug("could not raise %s", surface.handle)

    def bounds(self, handle):
        if not handle or not win32gui.IsWindow(handle):
            return None
        left, top, right, bottom = win32gui.GetWindowRect(handle)
        return Bounds(left, top, right - left, bottom - top)

    def windows(self):
        found = []

        def collect(hwnd, _):
            if win32gui.IsWindowVisible(hwnd) and not win32gui.IsIconic(hwnd):
                found.append(hwnd)
            return True

        win32gui.EnumWindows(collect, None)
        return [s for s in (self._surface(h) for h in found) if s is not None]


def default_provider() -> SurfaceProvider:
    return Win32SurfaceProvider() if HAS_WIN32 else ScreenSurfaceProvider()
