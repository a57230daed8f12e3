"""
Tests for recommendation extraction from chat replies
"""
import json
import unittest
from pathlib import Path

from engine.recommendation_parser import (
    RecommendationParser,
    classify,
    extract_price_targets,
    extract_reasoning,
    extract_symbols,
    extract_timeframe,
)

CORPUS_PATH = Path(__file__).parent / 'data' / 'parser_corpus.json'


class TestRecommendationParser(unittest.TestCase):

    def setUp(self):
        self.parser = RecommendationParser()

    def test_strong_buy_with_target_and_timeframe(self):
        recs = self.parser.parse_message("I strongly recommend buying ABCD, target $25, short-term")

        self.assertEqual(len(recs), 1)
        rec = recs[0]
        self.assertEqual(rec.symbol, 'ABCD')
        self.assertEqual(rec.type, 'buy')
        self.assertGreaterEqual(rec.confidence, 0.8)
        self.assertIn('$25', rec.price_targets)
        self.assertEqual(rec.timeframe, 'short-term')
        self.assertEqual(rec.source, 'ai_chat')

    def test_message_without_symbols(self):
        self.assertEqual(self.parser.parse_message("the market was quiet today"), [])
        self.assertEqual(self.parser.parse_message(""), [])
        self.assertEqual(self.parser.parse_message(None), [])

    def test_stop_words_are_not_symbols(self):
        self.assertEqual(extract_symbols("THE CEO said BUY NOW AND HOLD"), [])
        self.assertEqual(extract_symbols("GME and AMC, then GME again"), ['GME', 'AMC'])
        self.assertEqual(extract_symbols("a BAD quarter, a TAX hit and a CUT to OIL output"), [])
        recs = self.parser.parse_message("Strong buy on XOM after a BAD quarter for the sector")
        self.assertEqual([r.symbol for r in recs], ['XOM'])

    def test_no_keywords_defaults_to_analysis(self):
        action, confidence = classify("reported revenue in the period")
        self.assertEqual(action, 'analysis')
        self.assertEqual(confidence, 0.5)

    def test_intensifier_boost_is_capped(self):
        self.assertEqual(classify("sell it"), ('sell', 0.7))
        self.assertEqual(classify("definitely sell it"), ('sell', 0.85))
        self.assertEqual(classify("absolutely, definitely buy"), ('buy', 0.95))

    def test_reasoning_uses_sentence_mentioning_symbol(self):
        message = "Markets were choppy. GME looks bullish into the weekend. Nothing else stood out."
        self.assertEqual(extract_reasoning(message, 'GME'), "GME looks bullish into the weekend")
        self.assertIn('XYZ', extract_reasoning(message, 'XYZ'))

    def test_targets_and_timeframes(self):
        self.assertEqual(extract_price_targets("target $12.50 or a 15% pop"), ['$12.50', '15%'])
        self.assertIsNone(extract_timeframe("no horizon given"))
        self.assertEqual(extract_timeframe("over the next few weeks"), 'week')

    def test_to_dict(self):
        rec = self.parser.parse_message("I like AAPL into earnings.")[0]
        data = rec.to_dict()
        self.assertEqual(data['symbol'], 'AAPL')
        self.assertEqual(data['type'], 'buy')
        self.assertIn('context', data)

    def test_golden_corpus(self):
        corpus = json.loads(CORPUS_PATH.read_text())
        for case in corpus:
            with self.subTest(message=case['message']):
                recs = self.parser.parse_message(case['message'])
                self.assertEqual([r.symbol for r in recs], [case['symbol']])
                self.assertEqual(recs[0].type, case['type'])


if __name__ == '__main__':
    unittest.main()
