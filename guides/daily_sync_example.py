"""Example running a daily sync workflow against a SQLite database.

Run it twice and interrupt the first run with Ctrl+C: the second run resumes
at the step that was in flight.

    CYCLESYNC_DATABASE_URL=sqlite://daily.db python guides/daily_sync_example.py
"""

import asyncio
import logging
import random

from cyclesync import CycleSyncApp, WorkflowDefinition, WorkflowStep


class QuotaExceeded(Exception):
    status_code = 402


async def sync_prices(ctx):
    symbols = ["AAPL", "MSFT", "NVDA", "ASML"]
    for i, symbol in enumerate(symbols, start=1):
        await asyncio.sleep(1)
        if random.random() < 0.05:
            raise QuotaExceeded("You exceeded your daily API requests limit")
        await ctx.progress(i / len(symbols))
    await ctx.append_log(f"Summary: {len(symbols)} symbols synced")
    return {"symbols": len(symbols)}


async def compute_metrics(ctx):
    await asyncio.sleep(2)
    await ctx.append_log("Final metrics written")


workflow = WorkflowDefinition(
    name="Daily Sync",
    steps=[
        WorkflowStep(name="Sync prices", step_id="prices", parallel_group="market"),
        WorkflowStep(name="Sync fundamentals", step_id="fundamentals", skipped=True),
        WorkflowStep(name="Compute metrics", step_id="metrics"),
    ],
    jobs={"prices": sync_prices, "metrics": compute_metrics},
    max_cycles=3,
)


async def main():
    logging.basicConfig(level=logging.INFO)
    app = CycleSyncApp(workflow, sinks=[lambda snapshot: print(snapshot.model_dump_json())])
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
