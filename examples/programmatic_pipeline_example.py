"""
Example building and running a pipeline from Python.

This example shows how to:
1. Register stages with plain functions as adapters
2. Pass artifacts between stages through declared inputs
3. Attach gate policies to scan results
4. Observe stage completion and the final run record
"""

import logging
import tempfile

from cipipeline.core import (
    Finding, GatePolicy, PipelineExecutor, PipelineSettings, RunLog, Severity, StageGraph,
    StageReason, StageResult
)
from cipipeline.notifications import LogChannel, Notifier

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def provision(context):
    """Pretend to create infrastructure and publish its endpoint."""
    return StageResult.success(artifacts={"endpoint": "https://sonar.internal:9000"})


def analyse(context):
    """Report a handful of code quality findings."""
    endpoint = context.input("endpoint").value
    logger.info(f"Analysing against {endpoint}")
    return StageResult.success(findings=[
        Finding(Severity.MEDIUM, "code_smells", count=12),
        Finding(Severity.HIGH, "bugs", count=1),
    ])


def build(context):
    """Build an image and publish its digest."""
    return StageResult.success(artifacts={"image": "example/app@sha256:4f1c9e"})


def scan_image(context):
    """Scan the built image; one CRITICAL vulnerability is found."""
    image = context.input("image").value
    return StageResult.success(findings=[
        Finding(Severity.CRITICAL, "vulnerability", title=f"CVE-2024-0001 in {image}"),
        Finding(Severity.LOW, "vulnerability", count=7),
    ])


def deploy(context):
    """Never reached while the image gate blocks."""
    return StageResult.success(artifacts={"release": context.input("image").value})


def create_graph():
    """Create the delivery graph."""
    graph = StageGraph()
    graph.add_stage("provision", adapter=provision)
    graph.add_stage(
        "quality", ["provision"], adapter=analyse,
        inputs={"endpoint": "provision.endpoint"},
        gate=GatePolicy(name="quality", fail_on=Severity.HIGH, blocking=False),
    )
    graph.add_stage("build", ["quality"], adapter=build)
    graph.add_stage(
        "scan-image", ["build"], adapter=scan_image,
        inputs={"image": "build.image"},
        gate=GatePolicy(name="image", max_counts={Severity.CRITICAL: 0}),
    )
    graph.add_stage("deploy", ["scan-image"], adapter=deploy, inputs={"image": "build.image"})
    return graph


def main():
    """Run the example pipeline and summarise the outcome."""
    graph = create_graph()
    logger.info(f"Execution levels: {graph.execution_levels()}")

    runs_dir = tempfile.mkdtemp(prefix="cipipeline-runs-")
    executor = PipelineExecutor(
        max_workers=2,
        default_timeout=60,
        notifier=Notifier([LogChannel()]),
        run_log=RunLog(runs_dir),
    )

    def on_stage_complete(stage_id, result):
        logger.info(f"{stage_id}: {result.status.value}"
                    + (f" ({result.reason.value})" if result.reason else ""))

    run = executor.run(
        graph,
        pipeline_name="example-delivery",
        settings=PipelineSettings(variables={"environment": "demo"}),
        on_stage_complete=on_stage_complete,
    )

    logger.info(f"Pipeline {run.run_id} finished: {run.status.value}")
    for stage_id in run.stage_order:
        result = run.result(stage_id)
        logger.info(f"  {stage_id:<12} {result.status.value:<8} {result.message or ''}")

    deploy_result = run.result("deploy")
    assert deploy_result.reason is StageReason.UPSTREAM_FAILURE
    logger.info(f"Run record written to {runs_dir}")


if __name__ == "__main__":
    main()
