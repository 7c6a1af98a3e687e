# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from stepwise.config import RunConfig
from stepwise.errors import ConfigError, GenerationError, RunnerError
from stepwise.model import Step
from stepwise.reporter import Reporter
from stepwise.runner import Runner, load_tree
from stepwise.ui.console import Console, get_console, set_console

# Pause prompt commands
RUN_NEXT = ""
SKIP = "s"
RERUN_PREVIOUS = "p"
STOP = "x"
RESUME = "r"


def handle_pause_command(runner: Runner, command: str) -> None:
    """
    Carry out one command typed at the pause prompt.

    Anything that isn't a known command is run as a step in the paused branch's context.
    """
    console = get_console()
    command = command.strip()

    if command == RUN_NEXT:
        runner.run_one_step()
        console.print_step_result(runner.get_last_step())
    elif command == SKIP:
        runner.skip_one_step()
        console.print_step_result(runner.get_last_step())
    elif command == RERUN_PREVIOUS:
        step = runner.run_last_step()
        if step is None:
            console.print_info("No previous step to re-run")
        console.print_step_result(step)
    elif command == STOP:
        runner.stop()
    elif command == RESUME:
        runner.run()
    else:
        injected = Step(text=command, is_function_call=True, filename="<console>")
        for step in runner.inject_step(injected):
            console.print_step_result(step)


def pause_loop(runner: Runner) -> None:
    """Prompt for commands until the run is no longer paused."""
    console = get_console()
    while runner.has_paused() and not runner.has_stopped():
        console.print_paused(runner.get_next_ready_step(), runner.get_last_step())
        command = click.prompt("", default="", show_default=False, prompt_suffix="> ")
        try:
            handle_pause_command(runner, command)
        except (GenerationError, RunnerError) as e:
            console.print_error("Cannot do that while paused", str(e))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stepwise: branch-expanding step tree test runner."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("test_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--max-instances", default=None, type=int, help="Maximum number of branches run in parallel (default 5)")
@click.option("--groups", multiple=True, help="Only run branches in these groups (repeatable or comma separated)")
@click.option("--min-frequency", default=None, type=click.Choice(["low", "med", "high"]), help="Only run branches at or above this frequency")
@click.option("--no-debug", is_flag=True, default=False, help="Fail if any step is marked debug or only")
@click.option("--pause-on-fail", is_flag=True, default=False, help="Pause when a step fails (runs one branch at a time)")
@click.option("--headless/--no-headless", default=None, help="Run browsers headless (default: headless unless debugging)")
@click.option("--selenium-server", default=None, help="Remote browser endpoint to connect to")
@click.option("--step-data", default="all", show_default=True, type=click.Choice(["all", "fail", "none"]), help="Which branches keep screenshots")
@click.option("--max-screenshots", default=None, type=int, help="Screenshot budget for the whole run (-1 = unlimited)")
@click.option("--no-report", is_flag=True, default=False, help="Do not write a report")
@click.option("--report-path", default="report.json", show_default=True, help="Where to write the JSON report")
@click.option("--rerun-not-passed", is_flag=True, default=False, help="Only run branches that did not pass in the last report")
@click.pass_context
def run(
    ctx,
    test_file,
    max_instances,
    groups,
    min_frequency,
    no_debug,
    pause_on_fail,
    headless,
    selenium_server,
    step_data,
    max_screenshots,
    no_report,
    report_path,
    rerun_not_passed,
):
    """Run the step tree defined in TEST_FILE."""
    console = get_console()

    if not test_file.exists():
        console.print_error(
            "Test file not found",
            f"Could not find test file: {test_file}",
            suggestion="Specify a python file that defines TREE = tree(...):\n  stepwise run my_tests.py",
        )
        sys.exit(1)

    values = {
        "max_instances": max_instances,
        "groups": ",".join(groups) if groups else None,
        "min_frequency": min_frequency,
        "no_debug": no_debug,
        "pause_on_fail": pause_on_fail,
        "headless": headless,
        "selenium_server": selenium_server,
        "step_data": step_data,
        "max_screenshots": max_screenshots,
        "no_report": no_report,
        "report_path": report_path,
        "rerun_not_passed": rerun_not_passed,
    }

    try:
        config = RunConfig.build(**{k: v for k, v in values.items() if v is not None})
        tree = load_tree(test_file)
        runner = Runner(config)
        reporter = None if config.no_report else Reporter(tree, config.report_path)
        runner.init(tree, reporter)
    except ConfigError as e:
        console.print_error("Invalid option", str(e))
        sys.exit(1)
    except GenerationError as e:
        console.print_error("Could not build branches", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load test file",
            f"Could not load tree from {test_file}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)

    instances = min(runner.max_instances, len(tree.branches))
    if runner.pause_on_fail or tree.is_debug:
        instances = min(1, instances)
    console.print_run_started(
        test_file=test_file.name,
        branch_count=len(tree.branches),
        instances=instances,
        is_debug=tree.is_debug,
    )

    try:
        runner.run()
        pause_loop(runner)
    except KeyboardInterrupt:
        runner.stop()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)

    console.print_results(tree.branches, tree.elapsed)

    if any(b.is_failed for b in tree.branches):
        sys.exit(1)


if __name__ == "__main__":
    cli()
