"""Starter strategy scripts."""

DEFAULT_STRATEGY_TEMPLATE = '''\
class Strategy:
    """Simple moving average crossover."""

    def __init__(self, context):
        self.context = context
        self.fast_period = int(context.get_param("fast_period", 10))
        self.slow_period = int(context.get_param("slow_period", 30))
        self.quantity = float(context.get_param("quantity", 1.0))
        self.closes = []

    def on_bar(self, bar, position, orders):
        self.closes.append(bar["close"])
        if len(self.closes) < self.slow_period + 1:
            return []

        fast = sum(self.closes[-self.fast_period:]) / self.fast_period
        slow = sum(self.closes[-self.slow_period:]) / self.slow_period
        prev_fast = sum(self.closes[-self.fast_period - 1:-1]) / self.fast_period
        prev_slow = sum(self.closes[-self.slow_period - 1:-1]) / self.slow_period
        values = {"fast_sma": fast, "slow_sma": slow}

        side = position.get("side")
        if prev_fast <= prev_slow and fast > slow and side != "long":
            return [{
                "type": "buy",
                "quantity": self.quantity,
                "order_type": "market",
                "reason": "Fast SMA crossed above slow SMA",
                "indicator_values": values,
            }]
        if prev_fast >= prev_slow and fast < slow and side == "long":
            return [{
                "type": "close",
                "quantity": position.get("quantity", 0),
                "order_type": "market",
                "reason": "Fast SMA crossed below slow SMA",
                "indicator_values": values,
            }]
        return []
'''
