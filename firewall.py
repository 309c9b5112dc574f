"""
Firewall appliers: the only place where a plan touches the packet filter.

IpsetFirewallApplier executes plan operations directly (argv lists, no shell).
ScriptFirewallApplier runs the rendered apply_cmds.sh with bash, which is what
an operator reviewing the dry-run output would do by hand.
"""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Iterable, List

from errors import DependencyMissing
from plan_emitter import ActionPlan, PlanOperation

logger = logging.getLogger(__name__)

BASE_TOOLS = ["ipset", "iptables"]


def require_tools(tools: Iterable[str], which: Callable = shutil.which):
    """Raises DependencyMissing for the first tool not found on PATH."""
    for tool in tools:
        if not which(tool):
            raise DependencyMissing(
                tool, "install ipset/iptables or run without --apply to review the plan"
            )


def tools_for(plan: ActionPlan) -> List[str]:
    tools = list(BASE_TOOLS)
    if any(op.family == 6 for op in plan.operations):
        tools.append("ip6tables")
    return tools


class FirewallPlanApplier(ABC):
    """Turns an ActionPlan into packet-filter state."""

    @abstractmethod
    def apply(self, plan: ActionPlan) -> int:
        """
        Applies the plan.

        Returns:
            int: Number of operations that changed or refreshed state.

        Raises:
            subprocess.CalledProcessError: If the packet filter rejects a command.
        """
        pass

    def preflight(self):
        """Checks, before any output is written, that the tools --apply needs exist."""
        pass


class IpsetFirewallApplier(FirewallPlanApplier):
    def __init__(self, runner: Callable = subprocess.run, which: Callable = shutil.which):
        self.runner = runner
        self.which = which

    def preflight(self):
        require_tools(BASE_TOOLS, self.which)

    def _run(self, argv: List[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"Executing: {' '.join(argv)}")
        return self.runner(
            argv,
            check=check,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )

    def _apply_operation(self, op: PlanOperation) -> bool:
        check = op.check_argv()
        if check and self._run(check, check=False).returncode == 0:
            logger.debug(f"Rule for {op.collection} already present, skipping insert")
            return False
        self._run(op.argv())
        return True

    def apply(self, plan: ActionPlan) -> int:
        if plan.is_empty():
            logger.info("Plan is empty, nothing to apply.")
            return 0
        require_tools(tools_for(plan), self.which)
        logger.info(
            f"Applying {len(plan.add_members)} member(s) to "
            f"{', '.join(plan.collections)} (timeout {plan.ttl}s)"
        )
        changed = 0
        for op in plan.operations:
            if self._apply_operation(op):
                changed += 1
        logger.info(f"Applied {changed} operation(s). Entries auto-expire after {plan.ttl}s.")
        return changed


class ScriptFirewallApplier(FirewallPlanApplier):
    """Runs a previously written apply_cmds.sh."""

    def __init__(
        self,
        script_path: str,
        runner: Callable = subprocess.run,
        which: Callable = shutil.which,
    ):
        self.script_path = script_path
        self.runner = runner
        self.which = which

    def preflight(self):
        require_tools(["bash"] + BASE_TOOLS, self.which)

    def apply(self, plan: ActionPlan) -> int:
        if plan.is_empty():
            logger.info("Plan is empty, nothing to apply.")
            return 0
        require_tools(["bash"] + tools_for(plan), self.which)
        logger.info(f"Running {self.script_path}")
        self.runner(["bash", self.script_path], check=True)
        return len(plan.operations)
