"""Small workflow used by the CLI and loader tests."""

from cyclesync.contracts import WorkflowDefinition, WorkflowStep

processed: list[str] = []


async def sync_prices(ctx):
    await ctx.progress(0.5)
    processed.append("prices")
    return {"symbols": 3}


async def compute_metrics(ctx):
    await ctx.append_log("Metrics Summary: 3 symbols")
    processed.append("metrics")


workflow = WorkflowDefinition(
    name="Fixture Sync",
    steps=[
        WorkflowStep(name="Sync prices", step_id="prices", parallel_group="market"),
        WorkflowStep(name="Fundamentals", step_id="fundamentals", skipped=True),
        WorkflowStep(name="Compute metrics", step_id="metrics"),
    ],
    jobs={"prices": sync_prices, "metrics": compute_metrics},
)


def build_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="Factory Sync",
        steps=[WorkflowStep(name="Sync prices", step_id="prices")],
        jobs={"prices": sync_prices},
        max_cycles=1,
    )


not_a_workflow = {"name": "Fixture Sync"}
