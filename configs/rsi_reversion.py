import numpy as np


class Strategy:
    """Buy oversold RSI readings and exit once momentum recovers."""

    def __init__(self, context):
        self.indicators = context.indicators
        self.period = int(context.get_param("rsi_period", 14))
        self.oversold = float(context.get_param("oversold", 30))
        self.exit_level = float(context.get_param("exit_level", 55))
        self.quantity = float(context.get_param("quantity", 1.0))
        self.closes = []

    def on_bar(self, bar, position, orders):
        self.closes.append(bar["close"])
        if len(self.closes) <= self.period:
            return []

        values = self.indicators.rsi(np.array(self.closes[-200:]), self.period)
        current = float(values[-1])
        if np.isnan(current):
            return []

        side = position.get("side")
        if side is None and current < self.oversold:
            return {
                "type": "buy",
                "quantity": self.quantity,
                "reason": "RSI oversold",
                "indicator_values": {"rsi": current},
            }
        if side == "long" and current > self.exit_level:
            return {
                "type": "close",
                "quantity": 0,
                "reason": "RSI recovered",
                "indicator_values": {"rsi": current},
            }
        return []
