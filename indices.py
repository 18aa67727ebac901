COMMON_OPTION_SYMBOLS = [
    # Major ETFs
    "SPY","QQQ","IWM","DIA","XLF","XLE","XLK","XLV","XLP","XLI",
    # Tech
    "AAPL","MSFT","GOOGL","META","NVDA","AMD","TSLA","AMZN","NFLX",
    # Financial
    "GS","JPM","BAC","WFC","C","MS","V","MA",
    # Other active names
    "BA","DIS","COIN","GME","AMC","PLTR","UBER","ABNB",
    # Volatility, leveraged and rates
    "UVXY","TQQQ","SQQQ","TLT","HYG","EEM"
]

SUMMARY_SYMBOLS = ["SPY","QQQ","AAPL","TSLA","MSFT","META","NVDA","AMD"]

LONG_DATED_LARGE_SYMBOLS = ["SPY","QQQ","AAPL","MSFT","TSLA"]

SCREENER_SYMBOLS = ["SPY","QQQ"]


def clean_symbols(raw, default):
    """Upper-case, strip and de-duplicate ``raw``; fall back to ``default`` when empty."""
    if isinstance(raw, str):
        raw = raw.split(",")
    elif not isinstance(raw, (list, tuple)):
        raw = []
    seen = set()
    out = []
    for item in raw or []:
        sym = str(item or "").strip().upper()
        if not sym or sym in seen:
            continue
        seen.add(sym)
        out.append(sym)
    return out or list(default)
