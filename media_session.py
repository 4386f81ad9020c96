from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from PySide6 import QtCore, QtGui, QtWidgets

from config import APP_NAME, ARTWORK_SIZES, DEFAULT_ARTIST, DEFAULT_TITLE
from models import ArtworkImage, MediaMetadata

logger = logging.getLogger(__name__)

ACTIONS = ("play", "pause", "previoustrack", "nexttrack")

Handler = Optional[Callable[[], None]]


def build_artwork(src: Optional[str]) -> tuple[ArtworkImage, ...]:
    if not src:
        return ()
    return tuple(ArtworkImage(src=src, sizes=f"{size}x{size}") for size in ARTWORK_SIZES)


class MediaSession(QtCore.QObject):
    """
    Platform-neutral now-playing state with transport action handlers.
    """

    metadataChanged = QtCore.Signal(object)
    playbackStateChanged = QtCore.Signal(str)
    handlersChanged = QtCore.Signal()

    def __init__(self, parent=None):
        super().__init__(parent)
        self.metadata: Optional[MediaMetadata] = None
        self.playback_state = "none"
        self._handlers: Dict[str, Handler] = {action: None for action in ACTIONS}

    def set_metadata(self, metadata: Optional[MediaMetadata]) -> None:
        self.metadata = metadata
        self.metadataChanged.emit(metadata)

    def set_playback_state(self, state: str) -> None:
        if state not in ("none", "playing", "paused"):
            raise ValueError(f"Unknown playback state: {state}")
        self.playback_state = state
        self.playbackStateChanged.emit(state)

    def set_action_handler(self, action: str, handler: Handler) -> None:
        if action not in self._handlers:
            raise ValueError(f"Unsupported media session action: {action}")
        self._handlers[action] = handler
        self.handlersChanged.emit()

    def action_handler(self, action: str) -> Handler:
        return self._handlers.get(action)

    def trigger(self, action: str) -> bool:
        handler = self._handlers.get(action)
        if handler is None:
            return False
        handler()
        return True


class TrayMediaSession(MediaSession):
    """
    Desktop media session: tray icon tooltip + menu and keyboard media keys.
    """

    def __init__(self, window: QtWidgets.QWidget, icon: Optional[QtGui.QIcon] = None):
        super().__init__(window)
        self._window = window
        self.tray: Optional[QtWidgets.QSystemTrayIcon] = None
        self._menu = QtWidgets.QMenu(window)
        self._title_action = self._menu.addAction(APP_NAME)
        self._title_action.setEnabled(False)
        self._menu.addSeparator()
        self._actions: Dict[str, QtGui.QAction] = {}
        labels = {
            "play": "Play",
            "pause": "Pause",
            "previoustrack": "Previous Station",
            "nexttrack": "Next Station",
        }
        for action in ACTIONS:
            qaction = self._menu.addAction(labels[action])
            qaction.triggered.connect(lambda _checked=False, a=action: self.trigger(a))
            self._actions[action] = qaction

        if QtWidgets.QSystemTrayIcon.isSystemTrayAvailable():
            self.tray = QtWidgets.QSystemTrayIcon(icon or window.windowIcon(), window)
            self.tray.setContextMenu(self._menu)
            self.tray.setToolTip(APP_NAME)
            self.tray.show()

        self._shortcuts = []
        keys = (
            ("Media Play", "play"),
            ("Media Pause", "pause"),
            ("Toggle Media Play/Pause", None),
            ("Media Previous", "previoustrack"),
            ("Media Next", "nexttrack"),
        )
        for key, action in keys:
            if action is None:
                slot = self._toggle
            else:
                slot = lambda a=action: self.trigger(a)
            shortcut = QtGui.QShortcut(QtGui.QKeySequence(key), window, activated=slot)
            shortcut.setContext(QtCore.Qt.ShortcutContext.ApplicationShortcut)
            self._shortcuts.append(shortcut)

        self.metadataChanged.connect(self._refresh)
        self.playbackStateChanged.connect(self._refresh)
        self.handlersChanged.connect(self._refresh)
        self._refresh()

    def _toggle(self) -> None:
        self.trigger("pause" if self.playback_state == "playing" else "play")

    def _refresh(self, *_args) -> None:
        metadata = self.metadata
        if metadata is None:
            text = APP_NAME
        else:
            text = f"{metadata.title}\n{metadata.artist}"
        self._title_action.setText(text.replace("\n", " - "))
        for action, qaction in self._actions.items():
            qaction.setEnabled(self.action_handler(action) is not None)
        self._actions["play"].setVisible(self.playback_state != "playing")
        self._actions["pause"].setVisible(self.playback_state == "playing")
        if self.tray is not None:
            state = "Playing" if self.playback_state == "playing" else "Paused"
            self.tray.setToolTip(f"{text}\n{state}")

    def close(self) -> None:
        if self.tray is not None:
            self.tray.hide()


class MediaSessionBridge:
    """
    Mirrors player state into a media session. Every call is a no-op when no
    session is available.
    """

    def __init__(self, session: Optional[MediaSession]):
        self.session = session
        self._handlers: Dict[str, Handler] = {action: None for action in ACTIONS}

    def update(
        self,
        title: Optional[str],
        artist: Optional[str],
        album: Optional[str],
        artwork: Optional[str],
        is_playing: bool,
    ) -> None:
        if self.session is None:
            return
        metadata = MediaMetadata(
            title=title or DEFAULT_TITLE,
            artist=artist or DEFAULT_ARTIST,
            album=album or APP_NAME,
            artwork=build_artwork(artwork),
        )
        self.session.set_metadata(metadata)
        self.session.set_playback_state("playing" if is_playing else "paused")

    def set_handlers(self, play: Handler, pause: Handler, previous: Handler, next_: Handler) -> None:
        if self.session is None:
            return
        handlers = {"play": play, "pause": pause, "previoustrack": previous, "nexttrack": next_}
        # Bound methods are recreated on each access, compare with ==.
        if all(self._handlers[action] == handlers[action] for action in ACTIONS):
            return
        self.clear()
        for action in ACTIONS:
            self.session.set_action_handler(action, handlers[action])
        self._handlers = handlers

    def clear(self) -> None:
        if self.session is None:
            return
        for action in ACTIONS:
            self.session.set_action_handler(action, None)
        self._handlers = {action: None for action in ACTIONS}
