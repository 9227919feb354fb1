import time
from typing import Callable, List

from xui_synth.models import Inbound
from xui_synth.util import format_traffic

BLOCKED_MARK = "⛔️N/A"
TRAFFIC_ICON = "📊"
EXPIRY_ICON = "⏳"


def format_countdown(seconds: int) -> str:
    """Render a remaining duration as days/hours/minutes.

    Examples:
        >>> format_countdown(90000)
        '1D,1H⏳'
        >>> format_countdown(1800)
        '30M⏳'
    """
    seconds = max(seconds, 0)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days > 0:
        if hours > 0:
            return f"{days}D,{hours}H{EXPIRY_ICON}"
        return f"{days}D{EXPIRY_ICON}"
    if hours > 0:
        return f"{hours}H{EXPIRY_ICON}"
    return f"{minutes}M{EXPIRY_ICON}"


def expiry_seconds(expiry_ms: int) -> int:
    """Millisecond expiry to whole seconds, truncated toward zero.

    Examples:
        >>> expiry_seconds(-1999)
        -1
    """
    if expiry_ms < 0:
        return -(-expiry_ms // 1000)
    return expiry_ms // 1000


class RemarkFormatter:
    """Builds the label shown next to every subscription link.

    The remark model's first character is the separator, the rest is the
    order of the parts: ``i`` inbound remark, ``e`` client email, ``o`` the
    extra text (an external proxy's remark).
    """

    def __init__(self, remark_model: str = "-ieo", show_info: bool = False,
                 clock: Callable[[], float] = time.time) -> None:
        if not remark_model:
            raise ValueError("remark model needs at least a separator character")
        self.remark_model = remark_model
        self.show_info = show_info
        self.clock = clock

    @property
    def separator(self) -> str:
        return self.remark_model[0]

    def format(self, inbound: Inbound, email: str, extra: str = "") -> str:
        orders = {"i": inbound.remark, "e": email, "o": extra}
        remark: List[str] = [orders[c] for c in self.remark_model[1:] if orders.get(c)]

        if self.show_info:
            stats = inbound.get_client_traffic(email)
            if stats is not None:
                if not stats.enable:
                    return f"{BLOCKED_MARK}{self.separator}{self.separator.join(remark)}"
                vol = stats.total - (stats.up + stats.down)
                if stats.total > 0 and vol > 0:
                    remark.append(f"{format_traffic(vol)}{TRAFFIC_ICON}")
                exp = expiry_seconds(stats.expiryTime)
                if exp > 0:
                    remark.append(format_countdown(exp - int(self.clock())))
                elif exp < 0:
                    remark.append(format_countdown(-exp))

        return self.separator.join(remark)
