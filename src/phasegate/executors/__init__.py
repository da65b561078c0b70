from phasegate.executors.base import PhaseExecutor
from phasegate.executors.command import CommandExecutor, parse_phase_output
from phasegate.executors.scripted import ScriptedExecutor

__all__ = [
    "CommandExecutor",
    "PhaseExecutor",
    "ScriptedExecutor",
    "parse_phase_output",
]
