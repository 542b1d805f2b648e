"""Tip options shared by the proxy's `/config` route and the checkout client."""

TIP_PRESETS: tuple[int, ...] = (0, 10, 15, 20)
DEFAULT_TIP_PERCENT = 15
