from __future__ import annotations

from dataclasses import dataclass

from fieldsync.domain.verification import VerificationStatus

MIN_CONTRAST_RATIO = 4.5


@dataclass(frozen=True)
class StatusColorScheme:
    background: str
    text: str
    border: str


STATUS_COLORS: dict[str, StatusColorScheme] = {
    "pending": StatusColorScheme(background="#F5F5F5", text="#212121", border="#BDBDBD"),
    "in_progress": StatusColorScheme(background="#FFF3E0", text="#BF360C", border="#FF9800"),
    "pass": StatusColorScheme(background="#1B5E20", text="#FFFFFF", border="#388E3C"),
    "fail": StatusColorScheme(background="#B71C1C", text="#FFFFFF", border="#D32F2F"),
    "overdue": StatusColorScheme(background="#BF360C", text="#FFFFFF", border="#D84315"),
}


def get_color_scheme(status: VerificationStatus) -> StatusColorScheme:
    try:
        return STATUS_COLORS[status]
    except KeyError as exc:
        raise ValueError(f"Estado sin esquema de color: {status!r}") from exc


def _channel_to_linear(channel: int) -> float:
    value = channel / 255
    if value <= 0.04045:
        return value / 12.92
    return ((value + 0.055) / 1.055) ** 2.4


def relative_luminance(hex_color: str) -> float:
    """Luminancia relativa WCAG 2.x de un color ``#RRGGBB``."""
    raw = hex_color.strip().lstrip("#")
    if len(raw) != 6:
        raise ValueError(f"Color hexadecimal no válido: {hex_color!r}")
    red, green, blue = (int(raw[index:index + 2], 16) for index in (0, 2, 4))
    return (
        0.2126 * _channel_to_linear(red)
        + 0.7152 * _channel_to_linear(green)
        + 0.0722 * _channel_to_linear(blue)
    )


def contrast_ratio(foreground: str, background: str) -> float:
    lighter, darker = sorted((relative_luminance(foreground), relative_luminance(background)), reverse=True)
    return (lighter + 0.05) / (darker + 0.05)
