from __future__ import annotations

from PySide6 import QtGui

from models import Theme, THEMES
from utils import adjust_color

DEFAULT_THEME = "Lava"

DARK_TEXT = "#0b0b0b"


def get_theme(name: str) -> Theme:
    return THEMES.get(name, THEMES[DEFAULT_THEME])


def build_palette(theme: Theme) -> QtGui.QPalette:
    window_color = QtGui.QColor(theme.window)
    base_color = QtGui.QColor(theme.base)
    text_color = QtGui.QColor(theme.text)
    palette = QtGui.QPalette()
    roles = QtGui.QPalette.ColorRole
    palette.setColor(roles.Window, window_color)
    palette.setColor(roles.WindowText, text_color)
    palette.setColor(roles.Base, base_color)
    palette.setColor(roles.AlternateBase, base_color.lighter(108))
    palette.setColor(roles.Text, text_color)
    palette.setColor(roles.Button, QtGui.QColor(theme.card))
    palette.setColor(roles.ButtonText, text_color)
    palette.setColor(roles.Highlight, QtGui.QColor(theme.highlight))
    palette.setColor(roles.HighlightedText, QtGui.QColor(DARK_TEXT))
    palette.setColor(roles.ToolTipBase, QtGui.QColor(theme.card))
    palette.setColor(roles.ToolTipText, text_color)
    return palette


def _shades(theme: Theme) -> dict:
    edge = adjust_color(theme.card, lighter=125)
    return {
        "edge": edge,
        "key": adjust_color(theme.card, lighter=115),
        "key_hover": adjust_color(theme.card, lighter=130),
        "key_down": adjust_color(theme.card, darker=115),
        "muted": adjust_color(theme.text, darker=140),
        "groove": adjust_color(theme.base, lighter=160),
        "ember": adjust_color(theme.highlight, darker=160),
        "glow_edge": adjust_color(theme.highlight, lighter=130),
    }


def _controls(theme: Theme, s: dict) -> str:
    return f"""
        QPushButton, QToolButton {{
            padding: 5px 12px;
            border-radius: 6px;
            background: {s["key"]};
            border: 1px solid {s["edge"]};
            color: {theme.text};
        }}
        QPushButton:hover, QToolButton:hover {{
            background: {s["key_hover"]};
        }}
        QPushButton:pressed, QToolButton:pressed {{
            background: {s["key_down"]};
        }}
        QPushButton:checked {{
            background: {theme.highlight};
            color: {DARK_TEXT};
        }}
        QPushButton:disabled, QToolButton:disabled {{
            color: {s["muted"]};
            border-color: {s["key"]};
        }}
        QPushButton#power_button {{
            min-width: 56px;
            font-weight: 700;
        }}
        QPushButton#power_button:checked {{
            background: {theme.highlight};
            border: 1px solid {s["glow_edge"]};
        }}
        QPushButton#preset_button {{
            min-width: 36px;
            font-weight: 700;
            border-radius: 4px;
        }}
        QSlider::groove:horizontal {{
            height: 4px;
            border-radius: 2px;
            background: {s["groove"]};
        }}
        QSlider::sub-page:horizontal {{
            border-radius: 2px;
            background: {theme.highlight};
        }}
        QSlider::handle:horizontal {{
            width: 12px;
            margin: -5px 0;
            border-radius: 6px;
            background: {theme.accent};
        }}
        QSlider::groove:vertical {{
            width: 4px;
            border-radius: 2px;
            background: {s["groove"]};
        }}
        QSlider::add-page:vertical {{
            border-radius: 2px;
            background: {theme.highlight};
        }}
        QSlider::handle:vertical {{
            height: 12px;
            margin: 0 -5px;
            border-radius: 6px;
            background: {theme.accent};
        }}
        QComboBox {{
            padding: 3px 8px;
            border-radius: 6px;
            border: 1px solid {s["edge"]};
            background: {theme.base};
        }}
        QComboBox QAbstractItemView, QMenu {{
            background: {theme.base};
            color: {theme.text};
            border: 1px solid {s["edge"]};
            selection-background-color: {theme.highlight};
            selection-color: {DARK_TEXT};
        }}
        QMenu::item:selected {{
            background: {theme.highlight};
            color: {DARK_TEXT};
        }}
    """


def _panels(theme: Theme, s: dict) -> str:
    return f"""
        QMainWindow, QSplitter::handle {{
            background: {theme.window};
        }}
        QGroupBox {{
            margin-top: 14px;
            padding: 10px;
            border-radius: 10px;
            border: 1px solid {s["edge"]};
            background: {theme.card};
        }}
        QGroupBox::title {{
            subcontrol-origin: margin;
            left: 10px;
            padding: 0 4px;
            font-weight: 600;
        }}
        QListWidget {{
            padding: 4px;
            border-radius: 8px;
            border: 1px solid {s["edge"]};
            background: {theme.base};
        }}
        QListWidget::item {{
            padding: 5px 4px;
        }}
        QListWidget::item:selected {{
            background: {s["ember"]};
            color: {theme.text};
        }}
        QLabel#playlist_header {{
            font-weight: 600;
        }}
        QLabel#status_label {{
            color: {s["muted"]};
        }}
        QLabel#offline_badge {{
            padding: 1px 8px;
            border-radius: 4px;
            border: 1px solid {s["glow_edge"]};
            color: {theme.text};
            background: {s["ember"]};
        }}
    """


def _now_playing(theme: Theme, s: dict) -> str:
    return f"""
        QFrame#now_playing_frame {{
            padding: 12px;
            border-radius: 14px;
            border: 1px solid {s["edge"]};
            background: {theme.card};
        }}
        QFrame#media_frame {{
            border-radius: 10px;
            background: #000000;
        }}
        QLabel#station_name {{
            font-size: 22px;
            font-weight: 700;
        }}
        QLabel#track_title {{
            font-size: 14px;
            color: {theme.accent};
        }}
        QLabel#station_meta {{
            font-size: 12px;
            color: {s["muted"]};
        }}
        QLabel#live_badge {{
            padding: 1px 6px;
            border-radius: 4px;
            font-size: 10px;
            font-weight: 700;
            color: {DARK_TEXT};
            background: {theme.highlight};
        }}
        QLabel#live_badge[text=""] {{
            background: transparent;
        }}
    """


def build_stylesheet(theme: Theme) -> str:
    shades = _shades(theme)
    return "".join(
        (
            _panels(theme, shades),
            _controls(theme, shades),
            _now_playing(theme, shades),
        )
    )
