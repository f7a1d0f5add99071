"""
Batch runner for a user's pattern analysis
Backfills missing embeddings, runs the time, setup and risk passes and creates
recommendations for the resulting patterns.
Run with: python run_analysis.py --user-id <uuid>
"""
import argparse
import asyncio
import logging
import sys

# Set UTF-8 encoding for Windows
if sys.platform == 'win32':
    import codecs
    sys.stdout = codecs.getwriter('utf-8')(sys.stdout.buffer, 'strict')
    sys.stderr = codecs.getwriter('utf-8')(sys.stderr.buffer, 'strict')

from tradingjournal.database.config import get_supabase
from tradingjournal.dataflows.embeddings import EmbeddingsService
from tradingjournal.dataflows.pattern_analysis import PatternAnalysisService
from tradingjournal.exceptions import PersistenceError


async def run(user_id, timezone=None, skip_backfill=False, skip_recommendations=False):
    supabase = await get_supabase()
    if supabase is None:
        print("Supabase not configured. Please set SUPABASE_URL and SUPABASE_KEY in your .env file.")
        return False

    embeddings = EmbeddingsService(user_id, supabase)
    service = PatternAnalysisService(user_id, supabase, embeddings=embeddings, timezone=timezone)

    print("\n1. Backfilling embeddings...")
    if skip_backfill:
        print("   Skipped")
    elif not await embeddings.initialize():
        print(f"   Embeddings unavailable ({embeddings.degraded_reason.value}); continuing without them")
    else:
        summary = await embeddings.backfill_embeddings()
        print(f"   Trades: {summary['trades_indexed']}/{summary['trades_pending']} indexed")
        print(f"   Plans: {summary['plans_indexed']}/{summary['plans_pending']} indexed")

    print("\n2. Running pattern analysis...")
    try:
        trades = await service.load_trades()
        print(f"   Trades loaded: {len(trades)}")
        results = await service.run_full_analysis(trades)
    except PersistenceError as e:
        print(f"   Error: {e}")
        return False
    for pattern_type, patterns in results.items():
        print(f"   {pattern_type}: {len(patterns)} patterns")
        for pattern in patterns:
            print(f"      {pattern.pattern_key} (confidence {pattern.confidence_score:.2f}, "
                  f"success {pattern.success_rate:.0%}, n={pattern.sample_size})")

    print("\n3. Generating recommendations...")
    if skip_recommendations:
        print("   Skipped")
        return True
    created = 0
    for patterns in results.values():
        for pattern in patterns:
            try:
                recommendation = await service.generate_recommendation(pattern)
            except PersistenceError as e:
                print(f"   Error for {pattern.pattern_key}: {e}")
                return False
            if recommendation is None:
                continue
            created += 1
            zone = recommendation.entry_zone
            print(f"   {recommendation.ticker} {recommendation.direction}: "
                  f"zone {zone['lower']:.2f}-{zone['upper']:.2f}, "
                  f"stop {recommendation.stop_loss:.2f}, target {recommendation.target_price:.2f}")
    print(f"   Recommendations created: {created}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Run trade pattern analysis for a user")
    parser.add_argument("--user-id", required=True, help="owner whose trades are analyzed")
    parser.add_argument("--timezone", default=None, help="bucket entry hours in this zone, e.g. America/New_York")
    parser.add_argument("--skip-backfill", action="store_true")
    parser.add_argument("--skip-recommendations", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("Trade Pattern Analysis Runner")
    print("=" * 60)

    ok = asyncio.run(run(args.user_id, args.timezone, args.skip_backfill, args.skip_recommendations))
    print("\nDone!" if ok else "\nFinished with errors.")
    return ok


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
