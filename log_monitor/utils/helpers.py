import re

RGB_PATTERN = re.compile(r"^\s*rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})")

DARK_BACKGROUND = "#1e1e1e"
DARK_TEXT = "#d4d4d4"
LIGHT_BACKGROUND = "#ffffff"
LIGHT_TEXT = "#000000"


def hex_to_rgb(hex_str):
    hex_str = hex_str.lstrip('#')
    if not hex_str: return (0, 0, 0)
    if len(hex_str) == 3: hex_str = "".join(c*2 for c in hex_str)
    try:
        return tuple(int(hex_str[i:i+2], 16) for i in (0, 2, 4))
    except ValueError:
        return (0, 0, 0)


def rgb_to_hex(rgb):
    return '#{:02x}{:02x}{:02x}'.format(*(max(0, min(255, int(c))) for c in rgb))


def parse_color(color):
    """Accepts '#rrggbb', '#rgb' or 'rgb(r,g,b)' and returns a '#rrggbb' string or None."""
    if not color: return None
    m = RGB_PATTERN.match(color)
    if m:
        return rgb_to_hex(int(g) for g in m.groups())
    color = color.strip().lower()
    if not color.startswith("#"): color = "#" + color
    if not re.fullmatch(r"#([0-9a-f]{3}|[0-9a-f]{6})", color):
        return None
    return rgb_to_hex(hex_to_rgb(color))


def get_luminance(hex_str):
    rgb = hex_to_rgb(hex_str)
    return (0.299 * rgb[0] + 0.587 * rgb[1] + 0.114 * rgb[2]) / 255.0


def adjust_color_for_theme(hex_color, is_background, is_dark_mode):
    """Dims bright backgrounds and lifts dark text so rule colours stay readable in dark mode."""
    if not hex_color: return hex_color
    hex_color = hex_color.strip().lower()
    if not hex_color.startswith("#"): hex_color = "#" + hex_color

    if not is_dark_mode:
        return hex_color

    if is_background and hex_color in ("#ffffff", "#fff"):
        return DARK_BACKGROUND
    if not is_background and hex_color in ("#000000", "#000"):
        return DARK_TEXT

    rgb = hex_to_rgb(hex_color)
    lum = get_luminance(hex_color)
    if is_background and lum > 0.4:
        return rgb_to_hex(c * 0.25 for c in rgb)
    if not is_background and lum < 0.5:
        return rgb_to_hex(c + (255 - c) * 0.6 for c in rgb)
    return hex_color


def contrast_text_color(background):
    return LIGHT_TEXT if get_luminance(background) > 0.5 else DARK_TEXT


def rule_style(color, is_dark_mode):
    """
    Resolves the (background, foreground) pair used to paint a rule's matches.

    A rule without a usable colour is painted with the neutral theme colours
    inverted, so its matches still stand out from the surrounding text.
    """
    background = parse_color(color)
    if background is None:
        background = DARK_TEXT if is_dark_mode else LIGHT_TEXT
    background = adjust_color_for_theme(background, True, is_dark_mode)
    return background, contrast_text_color(background)
