"""Entry point for `python -m agent_council` and the `agent-council` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from agent_council.agent_runtime import ChatAgentClient
from agent_council.deliberation import DecisionEpochGraph
from agent_council.llm import ensure_openai_api_key
from agent_council.models import AGENT_DISPLAY_ORDER, Agent, AgentStatus, BrainMode, ProjectPhase
from agent_council.orchestrator import CouncilSession
from agent_council.persistence import CarryoverStore, FileKeyValueStore, ProjectStore, build_carryover
from agent_council.project_loop import ProjectLoopGraph, ShellExecutor
from agent_council.reducer import RehydrateProject
from agent_council.settings import RuntimeSettings

_TITLE_CHARS = 60


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a three-agent council with a designated CEO")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory for carryover and project ledgers (default: COUNCIL_STATE_STORE_ROOT)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    discuss = subparsers.add_parser("discuss", help="Ask all three agents, CEO last")
    discuss.add_argument("--prompt", required=True, help="Prompt for the council")

    decide = subparsers.add_parser("decide", help="Run one Decision Epoch")
    decide.add_argument("--intent", required=True, help="Intent the CEO should turn into an execution prompt")
    decide.add_argument("--ceo", type=str.lower, default=None, choices=[agent.value for agent in Agent])
    decide.add_argument("--ceo-only", action="store_true", help="Skip advisors; the CEO deliberates alone")

    project = subparsers.add_parser("project", help="Run one Project epoch up to the user build gate")
    project.add_argument("--intent", required=True, help="What the project should build")
    project.add_argument("--executor-command", required=True, help="Command that receives the execution prompt on stdin")
    return parser.parse_args(argv)


def _print_responses(responses: dict) -> None:
    for agent in AGENT_DISPLAY_ORDER:
        response = responses.get(agent)
        if response is None:
            continue
        if response.status == AgentStatus.SUCCESS:
            print(f"--- {agent.label} ---\n{response.content}\n")
        else:
            detail = f" ({response.error_code.value}: {response.error_message})" if response.error_code else ""
            print(f"--- {agent.label} [{response.status.value}]{detail} ---\n")


async def _discuss(args: argparse.Namespace, settings: RuntimeSettings, store: FileKeyValueStore) -> int:
    carryovers = CarryoverStore(store)
    session = CouncilSession(ChatAgentClient(settings=settings), settings, carryover_store=carryovers)
    result = await session.run_prompt(args.prompt.strip())
    _print_responses(result.responses)
    carryover = build_carryover(session.state)
    if carryover is not None and not carryovers.save(carryover):
        logging.warning("Carryover could not be saved to %s", store.root)
    return 0 if any(r.status == AgentStatus.SUCCESS for r in result.responses.values()) else 1


async def _decide(args: argparse.Namespace, settings: RuntimeSettings, store: FileKeyValueStore) -> int:
    projects = ProjectStore(store)
    project = projects.load_active()
    if project is None:
        project = projects.create(title=args.intent.strip()[:_TITLE_CHARS])
        projects.set_active(project.id)

    session = CouncilSession(
        ChatAgentClient(settings=settings),
        settings,
        mode=BrainMode.DECISION,
        carryover_store=CarryoverStore(store),
    )
    session.dispatch(RehydrateProject(project))
    graph = DecisionEpochGraph(session, project_store=projects)
    outcome = await graph.run(
        args.intent.strip(),
        ceo=Agent(args.ceo) if args.ceo else None,
        ceo_only=args.ceo_only,
    )

    print(f"epoch_id={outcome.epoch.epoch_id}")
    print(f"phase={outcome.epoch.phase.value}")
    print(f"terminal_reason={outcome.terminal_reason.value}")
    if outcome.prompt_artifact is not None:
        print(f"prompt_version={outcome.prompt_artifact.version}")
        print(outcome.prompt_artifact.text)
    for index, question in enumerate(outcome.blocked_questions, start=1):
        print(f"Q{index}: {question}")
    if outcome.decision is not None:
        print(f"decision_id={outcome.decision.id} project_id={project.id}")
    return 0 if outcome.prompt_artifact is not None else 1


async def _project(args: argparse.Namespace, settings: RuntimeSettings, store: FileKeyValueStore) -> int:
    session = CouncilSession(
        ChatAgentClient(settings=settings),
        settings,
        mode=BrainMode.PROJECT,
        carryover_store=CarryoverStore(store),
    )
    loop = ProjectLoopGraph(session, ShellExecutor(args.executor_command, cwd=Path.cwd()))
    outcome = await loop.run(args.intent.strip())

    run = outcome.run
    print(f"epoch_id={run.epoch_id} micro_epoch_id={run.micro_epoch_id} revisions={run.revision_count}")
    print(f"phase={run.phase.value}")
    print(f"loop_state={session.state.loop_state.value}")
    if run.error:
        print(f"error={run.error}")
    for interrupt in run.pending_blockers:
        print(f"blocker: {interrupt.message}")
    if outcome.resolution is not None and outcome.resolution.resolved:
        print(f"verdict={outcome.resolution.verdict} source={outcome.resolution.source.value}")
    if run.executor_output:
        print("executor_output:")
        print(run.executor_output)
    return 0 if run.phase == ProjectPhase.USER_BUILD_GATE else 1


_COMMANDS = {"discuss": _discuss, "decide": _decide, "project": _project}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Override before constructing settings.
    if args.state_store_root is not None:
        os.environ["COUNCIL_STATE_STORE_ROOT"] = str(args.state_store_root.resolve())

    repo_root = Path.cwd()
    try:
        settings = RuntimeSettings.from_env()
        ensure_openai_api_key(repo_root=repo_root)
        text = getattr(args, "prompt", None) or getattr(args, "intent", None) or ""
        if not text.strip():
            raise ValueError("prompt/intent must be non-empty")
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start council: %s", exc)
        return 1

    store = FileKeyValueStore(settings.state_store_path(repo_root))
    try:
        return asyncio.run(_COMMANDS[args.command](args, settings, store))
    except Exception as exc:  # noqa: BLE001
        logging.exception("Council run failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
