"""Command line interface for govflow."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from govflow import (
    ApprovalAutomation,
    SessionManager,
    WorkflowController,
    WorkItemService,
    load_config,
)
from govflow.contracts import Decision, WorkItemKind
from govflow.engines import InMemoryEngine, load_definitions

app = typer.Typer(help="CLI for driving governance workflows")

config_app = typer.Typer(help="Commands for inspecting configuration")
workflow_app = typer.Typer(help="Commands for rehearsing workflows")

app.add_typer(config_app, name="config")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """govflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else load_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_pairs(values: Optional[List[str]]) -> Dict[str, Any]:
    """Turn ``key=value`` options into a dict; values are parsed as YAML scalars."""
    parsed: Dict[str, Any] = {}
    for raw in values or []:
        if "=" not in raw:
            raise typer.BadParameter(f"expected key=value, got '{raw}'")
        key, value = raw.split("=", 1)
        parsed[key.strip()] = yaml.safe_load(value) if value else ""
    return parsed


@config_app.command("show")
def config_show(config_path: Optional[Path] = typer.Option(None, "--config")) -> None:
    """
    Show the resolved configuration and the policies it implies.

    Example:
        govflow config show
        govflow config show --config ./govflow.yaml
    """
    config = load_config(str(config_path) if config_path else None)
    typer.echo(f"Profile:      {config.profile.upper()}")
    typer.echo(f"Environment:  {config.display_name} ({config.environment.description})")
    typer.echo(f"Server:       {config.masked_server_url()}")
    typer.echo(f"Database:     {config.masked_database_url()}")
    typer.echo(f"Engine:       {config.engine.backend}")
    typer.echo(f"Rollback:     {config.should_rollback_transactions()}")
    typer.echo(f"Caching:      {'enabled' if config.caching_enabled() else 'disabled'}")
    typer.echo(f"Max retries:  {config.max_retry_count()}")
    typer.echo(f"Timeout:      {config.timeout_seconds():.0f}s")


@workflow_app.command("rehearse")
def workflow_rehearse(
    definitions: Path,
    workflow_name: str,
    actor: Optional[str] = typer.Option(None, help="Identity launching the workflow"),
    var: Optional[List[str]] = typer.Option(None, help="Workflow variable key=value"),
    field: Optional[List[str]] = typer.Option(None, help="Form field key=value"),
    reject: bool = typer.Option(False, help="Reject the first approval level"),
    timeout: float = typer.Option(30.0, help="Seconds to wait for completion"),
    poll_interval: float = typer.Option(0.05, help="Poll and settle interval"),
    config_path: Optional[Path] = typer.Option(None, "--config"),
) -> None:
    """
    Run a workflow definition end to end against the in-memory engine.

    Launches the workflow, completes every form with the given field values,
    approves (or rejects) every approval level and prints the outcome.

    Example:
        govflow workflow rehearse ./workflows.yaml "Activate Identity" \\
            --actor jane.doe --var identityName=bob --field reason=rehire
    """
    if not definitions.exists():
        typer.secho("Definitions file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config(str(config_path) if config_path else None)
    config.polling.work_item_interval = poll_interval
    config.polling.case_interval = poll_interval
    config.polling.settle_interval = poll_interval
    config.polling.work_item_timeout = max(poll_interval * 4, 0.2)

    engine = InMemoryEngine(definitions=load_definitions(str(definitions)))
    decision = Decision.REJECTED if reject else Decision.APPROVED
    fields = _parse_pairs(field)

    with SessionManager(config, engine=engine) as session:
        controller = WorkflowController(session)
        work_items = WorkItemService(session)
        automation = ApprovalAutomation(session, work_items)

        case_name = controller.launch(workflow_name, actor, _parse_pairs(var))
        if case_name is None:
            typer.secho(f"Launch of '{workflow_name}' failed", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Launched case: {case_name}")

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            items = work_items.find_by_case(case_name)
            if not items:
                session.refresh()
                case = controller.get_case(case_name)
                if case is None or case.is_complete:
                    break
                time.sleep(poll_interval)
                continue

            item = items[0]
            if item.kind is WorkItemKind.FORM:
                ok = work_items.complete_form(item.id, fields)
                typer.echo(f"Form {item.id} ({item.owner}): {'completed' if ok else 'FAILED'}")
                if not ok:
                    raise typer.Exit(code=1)
                continue

            run = automation.run(case_name, decision)
            for result in run.results:
                state = decision.value.lower() if result.success else "FAILED"
                typer.echo(f"Level {result.level} ({result.approver_name}): {state}")
            if run.count < 0:
                raise typer.Exit(code=1)

        case = controller.wait_for_completion(case_name, 0)
        if case is None:
            typer.secho("Case not found", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        status = case.completion_status.value if case.completion_status else "Running"
        typer.echo(f"Status: {status}")
        for key, value in sorted(case.variables.items()):
            typer.echo(f"  {key}: {value}")
        if case.completion_status is None:
            raise typer.Exit(code=2)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
