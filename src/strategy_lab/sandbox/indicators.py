"""Technical indicator library.

Every function is pure, takes numeric series (anything ``numpy.asarray``
accepts) and returns float arrays aligned with the input. Indices before the
warm-up window hold ``nan``.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

import numpy as np

PRICE_SOURCES = ("open", "high", "low", "close", "hl2", "hlc3", "ohlc4")


def _series(data: Any) -> np.ndarray:
    return np.asarray(data, dtype=float)


def _nan(length: int) -> np.ndarray:
    return np.full(length, np.nan, dtype=float)


def _true_range(high: np.ndarray, low: np.ndarray, close: np.ndarray) -> np.ndarray:
    tr = high - low
    if len(tr) > 1:
        prev_close = close[:-1]
        tr[1:] = np.maximum.reduce(
            [high[1:] - low[1:], np.abs(high[1:] - prev_close), np.abs(low[1:] - prev_close)]
        )
    return tr


def sma(data: Any, period: int = 20) -> np.ndarray:
    values = _series(data)
    result = _nan(len(values))
    if period <= 0 or len(values) < period:
        return result
    cumsum = np.cumsum(np.insert(values, 0, 0.0))
    result[period - 1 :] = (cumsum[period:] - cumsum[:-period]) / period
    return result


def ema(data: Any, period: int = 20) -> np.ndarray:
    """Exponential average seeded with the running mean of the first ``period`` values."""
    values = _series(data)
    result = np.empty(len(values), dtype=float)
    if len(values) == 0:
        return result
    multiplier = 2.0 / (period + 1.0)
    result[0] = values[0]
    for i in range(1, len(values)):
        if i < period:
            result[i] = values[: i + 1].mean()
        else:
            result[i] = (values[i] - result[i - 1]) * multiplier + result[i - 1]
    return result


def wma(data: Any, period: int = 20) -> np.ndarray:
    values = _series(data)
    result = _nan(len(values))
    if period <= 0 or len(values) < period:
        return result
    weights = np.arange(1, period + 1, dtype=float)
    denominator = weights.sum()
    for i in range(period - 1, len(values)):
        result[i] = np.dot(values[i - period + 1 : i + 1], weights) / denominator
    return result


def vwma(close: Any, volume: Any, period: int = 20) -> np.ndarray:
    closes = _series(close)
    volumes = _series(volume)
    result = _nan(len(closes))
    for i in range(period - 1, len(closes)):
        window_volume = volumes[i - period + 1 : i + 1]
        total = window_volume.sum()
        if total > 0:
            result[i] = np.dot(closes[i - period + 1 : i + 1], window_volume) / total
        else:
            result[i] = closes[i]
    return result


def rsi(data: Any, period: int = 14) -> np.ndarray:
    """Wilder RSI.

    The seed averages are the plain means of the first ``period`` changes and
    land on index ``period``; every later index applies
    ``avg = (avg * (period - 1) + x) / period``.
    """
    values = _series(data)
    result = _nan(len(values))
    if period <= 0 or len(values) <= period:
        return result
    changes = np.diff(values)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()

    def _value(gain: float, loss: float) -> float:
        if loss == 0:
            return 100.0
        return 100.0 - 100.0 / (1.0 + gain / loss)

    result[period] = _value(avg_gain, avg_loss)
    for i in range(period + 1, len(values)):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        result[i] = _value(avg_gain, avg_loss)
    return result


def _smooth(values: np.ndarray, period: int) -> np.ndarray:
    # simple average over the defined tail; the NaN warm-up prefix is kept
    result = _nan(len(values))
    defined = np.flatnonzero(~np.isnan(values))
    if len(defined):
        start = defined[0]
        result[start:] = sma(values[start:], period)
    return result


def stochastic(
    high: Any,
    low: Any,
    close: Any,
    k_period: int = 14,
    d_period: int = 3,
    smooth_k: int = 3,
) -> dict[str, np.ndarray]:
    highs, lows, closes = _series(high), _series(low), _series(close)
    raw_k = _nan(len(closes))
    for i in range(k_period - 1, len(closes)):
        highest = highs[i - k_period + 1 : i + 1].max()
        lowest = lows[i - k_period + 1 : i + 1].min()
        if highest == lowest:
            raw_k[i] = 50.0
        else:
            raw_k[i] = (closes[i] - lowest) / (highest - lowest) * 100.0
    k = _smooth(raw_k, smooth_k)
    d = _smooth(k, d_period)
    return {"k": k, "d": d}


def macd(
    data: Any,
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> dict[str, np.ndarray]:
    values = _series(data)
    line = ema(values, fast_period) - ema(values, slow_period)
    signal = ema(line, signal_period)
    return {"macd": line, "signal": signal, "histogram": line - signal}


def roc(data: Any, period: int = 10) -> np.ndarray:
    values = _series(data)
    result = _nan(len(values))
    for i in range(period, len(values)):
        previous = values[i - period]
        result[i] = (values[i] - previous) / previous * 100.0 if previous != 0 else 0.0
    return result


def atr(high: Any, low: Any, close: Any, period: int = 14) -> np.ndarray:
    """Wilder ATR seeded with the mean true range of the first window."""
    highs, lows, closes = _series(high), _series(low), _series(close)
    result = _nan(len(closes))
    if period <= 0 or len(closes) < period:
        return result
    tr = _true_range(highs, lows, closes)
    value = tr[:period].mean()
    result[period - 1] = value
    for i in range(period, len(closes)):
        value = (value * (period - 1) + tr[i]) / period
        result[i] = value
    return result


def bollinger(data: Any, period: int = 20, std_dev: float = 2.0) -> dict[str, np.ndarray]:
    values = _series(data)
    middle = sma(values, period)
    upper = _nan(len(values))
    lower = _nan(len(values))
    for i in range(period - 1, len(values)):
        window = values[i - period + 1 : i + 1]
        deviation = window.std(ddof=1) if len(window) > 1 else 0.0
        upper[i] = middle[i] + std_dev * deviation
        lower[i] = middle[i] - std_dev * deviation
    return {"upper": upper, "middle": middle, "lower": lower}


def keltner(
    high: Any,
    low: Any,
    close: Any,
    ema_period: int = 20,
    atr_period: int = 10,
    multiplier: float = 2.0,
) -> dict[str, np.ndarray]:
    middle = ema(close, ema_period)
    ranges = atr(high, low, close, atr_period)
    return {
        "upper": middle + multiplier * ranges,
        "middle": middle,
        "lower": middle - multiplier * ranges,
    }


def obv(close: Any, volume: Any) -> np.ndarray:
    closes, volumes = _series(close), _series(volume)
    result = np.empty(len(closes), dtype=float)
    if len(closes) == 0:
        return result
    result[0] = volumes[0]
    for i in range(1, len(closes)):
        if closes[i] > closes[i - 1]:
            result[i] = result[i - 1] + volumes[i]
        elif closes[i] < closes[i - 1]:
            result[i] = result[i - 1] - volumes[i]
        else:
            result[i] = result[i - 1]
    return result


def vwap(high: Any, low: Any, close: Any, volume: Any) -> np.ndarray:
    typical = (_series(high) + _series(low) + _series(close)) / 3.0
    volumes = _series(volume)
    cumulative_volume = np.cumsum(volumes)
    cumulative_tpv = np.cumsum(typical * volumes)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(cumulative_volume > 0, cumulative_tpv / cumulative_volume, typical)


def mfi(high: Any, low: Any, close: Any, volume: Any, period: int = 14) -> np.ndarray:
    """Money flow index; NaN until ``period`` price changes are available."""
    typical = (_series(high) + _series(low) + _series(close)) / 3.0
    volumes = _series(volume)
    result = _nan(len(typical))
    flows = np.zeros(len(typical), dtype=float)
    for i in range(1, len(typical)):
        direction = np.sign(typical[i] - typical[i - 1])
        flows[i] = typical[i] * volumes[i] * direction
        if i < period:
            continue
        window = flows[i - period + 1 : i + 1]
        positive = window[window > 0].sum()
        negative = abs(window[window < 0].sum())
        result[i] = 100.0 if negative == 0 else 100.0 - 100.0 / (1.0 + positive / negative)
    return result


def adx(high: Any, low: Any, close: Any, period: int = 14) -> dict[str, np.ndarray]:
    highs, lows, closes = _series(high), _series(low), _series(close)
    length = len(closes)
    tr = _true_range(highs, lows, closes)
    plus_dm = np.zeros(length, dtype=float)
    minus_dm = np.zeros(length, dtype=float)
    for i in range(1, length):
        up_move = highs[i] - highs[i - 1]
        down_move = lows[i - 1] - lows[i]
        if up_move > down_move and up_move > 0:
            plus_dm[i] = up_move
        elif down_move > up_move and down_move > 0:
            minus_dm[i] = down_move

    di_plus = _nan(length)
    di_minus = _nan(length)
    dx = _nan(length)
    smooth_tr = smooth_plus = smooth_minus = 0.0
    for i in range(period - 1, length):
        if i == period - 1:
            smooth_tr = tr[:period].sum()
            smooth_plus = plus_dm[:period].sum()
            smooth_minus = minus_dm[:period].sum()
        else:
            smooth_tr = smooth_tr - smooth_tr / period + tr[i]
            smooth_plus = smooth_plus - smooth_plus / period + plus_dm[i]
            smooth_minus = smooth_minus - smooth_minus / period + minus_dm[i]
        di_plus[i] = smooth_plus / smooth_tr * 100.0 if smooth_tr > 0 else 0.0
        di_minus[i] = smooth_minus / smooth_tr * 100.0 if smooth_tr > 0 else 0.0
        total = di_plus[i] + di_minus[i]
        dx[i] = abs(di_plus[i] - di_minus[i]) / total * 100.0 if total > 0 else 0.0

    result = _nan(length)
    seed_index = 2 * period - 2
    if period > 0 and length > seed_index:
        value = dx[period - 1 : seed_index + 1].mean()
        result[seed_index] = value
        for i in range(seed_index + 1, length):
            value = (value * (period - 1) + dx[i]) / period
            result[i] = value
    return {"adx": result, "di_plus": di_plus, "di_minus": di_minus}


def aroon(high: Any, low: Any, period: int = 25) -> dict[str, np.ndarray]:
    highs, lows = _series(high), _series(low)
    up = _nan(len(highs))
    down = _nan(len(highs))
    for i in range(period, len(highs)):
        up[i] = int(np.argmax(highs[i - period : i + 1])) / period * 100.0
        down[i] = int(np.argmin(lows[i - period : i + 1])) / period * 100.0
    return {"aroon_up": up, "aroon_down": down}


def cci(high: Any, low: Any, close: Any, period: int = 20) -> np.ndarray:
    typical = (_series(high) + _series(low) + _series(close)) / 3.0
    result = _nan(len(typical))
    for i in range(period - 1, len(typical)):
        window = typical[i - period + 1 : i + 1]
        mean = window.mean()
        deviation = np.abs(window - mean).mean()
        result[i] = 0.0 if deviation == 0 else (typical[i] - mean) / (0.015 * deviation)
    return result


def ohlcv_columns(data: Any) -> dict[str, np.ndarray]:
    """Normalize bars (objects, mappings or a column mapping) into arrays."""
    if isinstance(data, Mapping):
        columns = {key: _series(data[key]) for key in ("open", "high", "low", "close") if key in data}
        if "close" not in columns:
            raise ValueError("Series data requires a 'close' column")
        length = len(columns["close"])
        for key in ("open", "high", "low"):
            columns.setdefault(key, columns["close"])
        columns["volume"] = _series(data["volume"]) if "volume" in data else np.zeros(length)
        return columns

    rows = list(data)
    if rows and not isinstance(rows[0], (Mapping,)) and not hasattr(rows[0], "close"):
        closes = _series(rows)
        return {"open": closes, "high": closes, "low": closes, "close": closes, "volume": np.zeros(len(closes))}

    def pick(row: Any, key: str) -> float:
        if isinstance(row, Mapping):
            return float(row.get(key, row.get("close", 0.0)) or 0.0)
        return float(getattr(row, key))

    return {key: np.array([pick(row, key) for row in rows], dtype=float) for key in ("open", "high", "low", "close", "volume")}


def price_source(columns: Mapping[str, np.ndarray], source: str = "close") -> np.ndarray:
    if source == "hl2":
        return (columns["high"] + columns["low"]) / 2.0
    if source == "hlc3":
        return (columns["high"] + columns["low"] + columns["close"]) / 3.0
    if source == "ohlc4":
        return (columns["open"] + columns["high"] + columns["low"] + columns["close"]) / 4.0
    if source in columns:
        return columns[source]
    return columns["close"]


def _param(params: Mapping[str, Any], key: str, default: float) -> Any:
    value = params.get(key)
    return value if value else default


def _single(key: str, fn: Callable[..., np.ndarray]) -> Callable[[dict, Mapping[str, Any]], dict]:
    def run(columns: dict, params: Mapping[str, Any]) -> dict:
        return {key: fn(columns, params)}

    return run


_INDICATORS: dict[str, Callable[[dict, Mapping[str, Any]], dict]] = {
    "SMA": _single("sma", lambda c, p: sma(price_source(c, p.get("source", "close")), int(_param(p, "period", 20)))),
    "EMA": _single("ema", lambda c, p: ema(price_source(c, p.get("source", "close")), int(_param(p, "period", 20)))),
    "WMA": _single("wma", lambda c, p: wma(price_source(c, p.get("source", "close")), int(_param(p, "period", 20)))),
    "VWMA": _single("vwma", lambda c, p: vwma(c["close"], c["volume"], int(_param(p, "period", 20)))),
    "RSI": _single("rsi", lambda c, p: rsi(price_source(c, p.get("source", "close")), int(_param(p, "period", 14)))),
    "STOCHASTIC": lambda c, p: stochastic(
        c["high"],
        c["low"],
        c["close"],
        int(_param(p, "k_period", 14)),
        int(_param(p, "d_period", 3)),
        int(_param(p, "smooth_k", 3)),
    ),
    "MACD": lambda c, p: macd(
        c["close"],
        int(_param(p, "fast_period", 12)),
        int(_param(p, "slow_period", 26)),
        int(_param(p, "signal_period", 9)),
    ),
    "ROC": _single("roc", lambda c, p: roc(c["close"], int(_param(p, "period", 10)))),
    "ATR": _single("atr", lambda c, p: atr(c["high"], c["low"], c["close"], int(_param(p, "period", 14)))),
    "BOLLINGER": lambda c, p: bollinger(c["close"], int(_param(p, "period", 20)), float(_param(p, "std_dev", 2.0))),
    "KELTNER": lambda c, p: keltner(
        c["high"],
        c["low"],
        c["close"],
        int(_param(p, "ema_period", 20)),
        int(_param(p, "atr_period", 10)),
        float(_param(p, "multiplier", 2.0)),
    ),
    "OBV": _single("obv", lambda c, p: obv(c["close"], c["volume"])),
    "VWAP": _single("vwap", lambda c, p: vwap(c["high"], c["low"], c["close"], c["volume"])),
    "MFI": _single("mfi", lambda c, p: mfi(c["high"], c["low"], c["close"], c["volume"], int(_param(p, "period", 14)))),
    "ADX": lambda c, p: adx(c["high"], c["low"], c["close"], int(_param(p, "period", 14))),
    "AROON": lambda c, p: aroon(c["high"], c["low"], int(_param(p, "period", 25))),
    "CCI": _single("cci", lambda c, p: cci(c["high"], c["low"], c["close"], int(_param(p, "period", 20)))),
}

_ALIASES = {"STOCH": "STOCHASTIC", "BB": "BOLLINGER", "KC": "KELTNER"}

INDICATOR_NAMES: tuple[str, ...] = tuple(sorted(_INDICATORS))


def calculate_indicator(name: str, data: Any, params: Mapping[str, Any] | None = None) -> dict[str, list[float]]:
    key = name.upper()
    key = _ALIASES.get(key, key)
    calculator = _INDICATORS.get(key)
    if calculator is None:
        raise ValueError(f"Unknown indicator: {name}")
    output = calculator(ohlcv_columns(data), dict(params or {}))
    return {column: [float(value) for value in values] for column, values in output.items()}


class IndicatorLibrary:
    """Indicator functions as exposed to strategy scripts via ``context.indicators``."""

    sma = staticmethod(sma)
    ema = staticmethod(ema)
    wma = staticmethod(wma)
    vwma = staticmethod(vwma)
    rsi = staticmethod(rsi)
    stochastic = staticmethod(stochastic)
    macd = staticmethod(macd)
    roc = staticmethod(roc)
    atr = staticmethod(atr)
    bollinger = staticmethod(bollinger)
    keltner = staticmethod(keltner)
    obv = staticmethod(obv)
    vwap = staticmethod(vwap)
    mfi = staticmethod(mfi)
    adx = staticmethod(adx)
    aroon = staticmethod(aroon)
    cci = staticmethod(cci)

    def calculate(self, name: str, data: Sequence[Any], **params: Any) -> dict[str, list[float]]:
        return calculate_indicator(name, data, params)
