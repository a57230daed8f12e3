"""
Recommendation Parser
Extracts structured trade recommendations from free-text AI chat replies.

Classification runs through an ordered table of tagged rules; the first rule
whose predicate accepts the text around a ticker decides the action.
"""
import re
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Tuple

SYMBOL_PATTERN = re.compile(r'\b[A-Z]{2,5}\b')
SENTENCE_SPLIT = re.compile(r'[.!?]+')
DOLLAR_TARGET = re.compile(r'\$\d+(?:\.\d{1,2})?')
PERCENT_TARGET = re.compile(r'\d+(?:\.\d{1,2})?%')

CONTEXT_RADIUS = 150
INTENSIFIER_BOOST = 0.15
MAX_CONFIDENCE = 0.95
DEFAULT_ACTION = 'analysis'
DEFAULT_CONFIDENCE = 0.5

# Upper-case runs that look like tickers but are ordinary words
STOP_WORDS = frozenset({
    'THE', 'AND', 'FOR', 'ARE', 'BUT', 'NOT', 'YOU', 'ALL', 'CAN', 'HAD', 'HER', 'WAS', 'ONE',
    'OUR', 'OUT', 'DAY', 'GET', 'HAS', 'HIM', 'HIS', 'HOW', 'ITS', 'MAY', 'NEW', 'NOW', 'OLD',
    'SEE', 'TWO', 'WAY', 'WHO', 'BOY', 'DID', 'LET', 'PUT', 'SAY', 'SHE', 'TOO', 'USE', 'WHY',
    'BUY', 'SELL', 'HOLD', 'WATCH', 'WITH', 'THIS', 'THAT', 'FROM', 'THEY', 'HAVE', 'WILL',
    'YOUR', 'WHAT', 'WHEN', 'THAN', 'THEM', 'THEN', 'BEEN', 'INTO', 'JUST', 'ALSO', 'VERY',
    'MORE', 'MOST', 'SOME', 'ONLY', 'OVER', 'SUCH', 'EACH', 'LIKE', 'LONG', 'HIGH', 'LOW',
    'TOP', 'BIG', 'END', 'ANY', 'FEW', 'OFF', 'OWN', 'SET', 'YES', 'YET', 'ZOO',
    'MAN', 'OIL', 'SIT', 'RUN', 'EAT', 'FAR', 'SEA', 'EYE', 'AGO', 'GOT', 'TRY', 'ADD', 'BAD',
    'WIN', 'HIT', 'CUT', 'LOT', 'BET', 'BOX', 'BAG', 'BIT', 'JOB', 'AGE', 'LAW', 'AIR', 'ARM',
    'BAR', 'CAR', 'CAT', 'DOG', 'EGG', 'FAN', 'GUN', 'HAT', 'ICE', 'KEY', 'LEG', 'MAP', 'NET',
    'PEN', 'POT', 'RAT', 'SUN', 'TAX', 'TEA', 'VAN', 'WEB',
    # two letter words and common finance acronyms
    'AI', 'AM', 'AN', 'AS', 'AT', 'BE', 'BY', 'DO', 'GO', 'HE', 'IF', 'IN', 'IS', 'IT', 'ME',
    'MY', 'NO', 'OF', 'OK', 'ON', 'OR', 'SO', 'TO', 'UP', 'US', 'WE',
    'CEO', 'CFO', 'EPS', 'ETF', 'FDA', 'IPO', 'SEC', 'USD', 'NYSE', 'IMO', 'FYI', 'ATH', 'EOD',
})

BUY_KEYWORDS = (
    'recommend', 'buy', 'strong', 'excellent', 'bullish', 'positive', 'good opportunity',
    'attractive', 'compelling', 'promising', 'high potential', 'upside', 'target', 'like',
    'love', 'favor', 'top pick', 'strong candidate', 'squeeze candidate', 'entry point',
    'should buy', 'would buy', 'my pick', 'solid choice', 'great pick', 'worth buying',
    'strong buy', 'buy signal', 'high conviction', 'excellent choice', 'best bet',
    'standout', 'winner', 'outperform',
)
SELL_KEYWORDS = (
    'sell', 'exit', 'avoid', 'bearish', 'negative', 'poor', 'bad', 'weak', 'risky',
    'dangerous', 'concerning', 'red flag', 'warning', 'stay away', 'steer clear',
    'sell signal', 'exit signal', 'dump', 'cash out', 'take profit', 'cut losses',
    'stop out', 'bail out', 'get rid of', 'offload', 'dispose', 'liquidate', 'close position',
)
HOLD_KEYWORDS = (
    'hold', 'keep', 'maintain', 'neutral', 'stable', 'steady', 'consistent', 'reliable',
    'solid', 'secure', 'safe', 'stay', 'remain', 'continue', 'retain', 'preserve',
    'hang onto', 'keep position', 'hold position', 'maintain position',
)
WATCH_KEYWORDS = (
    'watch', 'monitor', 'track', 'observe', 'follow', 'keep eye on', 'keep tabs',
    'potential', 'interesting', 'worth watching', 'worth monitoring', 'worth noting',
    'worth considering', 'worth looking at', 'on my radar', 'watching closely',
    'keeping an eye on', 'potential opportunity', 'emerging',
)
INTENSIFIERS = (
    'strongly', 'highly', 'extremely', 'very', 'absolutely', 'definitely', 'certainly',
    'clearly', 'obviously', 'excellent', 'outstanding', 'exceptional', 'remarkable',
    'fantastic', 'amazing',
)
TIMEFRAMES = (
    'short-term', 'long-term', 'near-term', 'immediate', 'day', 'week', 'month',
    'quarter', 'year', 'daily', 'weekly', 'monthly', 'quarterly', 'yearly',
)


def _contains_any(keywords: Tuple[str, ...]) -> Callable[[str], bool]:
    return lambda text: any(keyword in text for keyword in keywords)


@dataclass(frozen=True)
class ClassificationRule:
    action: str
    base_confidence: float
    predicate: Callable[[str], bool]


# Evaluated in order, first match wins
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule('buy', 0.8, _contains_any(BUY_KEYWORDS)),
    ClassificationRule('sell', 0.7, _contains_any(SELL_KEYWORDS)),
    ClassificationRule('hold', 0.6, _contains_any(HOLD_KEYWORDS)),
    ClassificationRule('watch', 0.6, _contains_any(WATCH_KEYWORDS)),
)


@dataclass
class ParsedRecommendation:
    symbol: str
    type: str
    confidence: float
    reasoning: str
    context: str
    price_targets: List[str] = field(default_factory=list)
    timeframe: Optional[str] = None
    source: str = 'ai_chat'

    def to_dict(self) -> Dict:
        return asdict(self)


def extract_symbols(message: str) -> List[str]:
    """Unique ticker-like tokens in order of first appearance."""
    seen = []
    for match in SYMBOL_PATTERN.findall(message):
        if match not in STOP_WORDS and match not in seen:
            seen.append(match)
    return seen


def context_window(message: str, symbol: str, radius: int = CONTEXT_RADIUS) -> str:
    match = re.search(rf'\b{re.escape(symbol)}\b', message)
    if not match:
        return ''
    start = max(0, match.start() - radius)
    return message[start:match.end() + radius]


def classify(context: str) -> Tuple[str, float]:
    """Return (action, confidence) for the text surrounding a symbol."""
    lowered = context.lower()
    action, confidence = DEFAULT_ACTION, DEFAULT_CONFIDENCE
    for rule in CLASSIFICATION_RULES:
        if rule.predicate(lowered):
            action, confidence = rule.action, rule.base_confidence
            break

    if any(word in lowered for word in INTENSIFIERS):
        confidence = min(MAX_CONFIDENCE, confidence + INTENSIFIER_BOOST)
    return action, round(confidence, 2)


def extract_reasoning(message: str, symbol: str) -> str:
    for sentence in SENTENCE_SPLIT.split(message):
        if symbol.lower() in sentence.lower():
            return sentence.strip()
    return f"Analysis of {symbol} based on market conditions and squeeze potential"


def extract_price_targets(context: str) -> List[str]:
    return DOLLAR_TARGET.findall(context) + PERCENT_TARGET.findall(context)


def extract_timeframe(context: str) -> Optional[str]:
    lowered = context.lower()
    for timeframe in TIMEFRAMES:
        if timeframe in lowered:
            return timeframe
    return None


class RecommendationParser:
    """Stateless; one instance can be shared freely."""

    def parse_message(self, message: str) -> List[ParsedRecommendation]:
        if not message or not isinstance(message, str):
            return []

        recommendations = []
        for symbol in extract_symbols(message):
            context = context_window(message, symbol)
            if not context:
                continue
            action, confidence = classify(context)
            recommendations.append(ParsedRecommendation(
                symbol=symbol,
                type=action,
                confidence=confidence,
                reasoning=extract_reasoning(message, symbol),
                context=context.strip(),
                price_targets=extract_price_targets(context),
                timeframe=extract_timeframe(context),
            ))
        return recommendations
