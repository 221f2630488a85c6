"""Declarative replay: step schema, script synthesis and interpreter."""

from regtestenv.replay.interpreter import ReplayInterpreter, ReplayReport
from regtestenv.replay.planner import build_replay_script
from regtestenv.replay.steps import ReplayScript, ReplayStep, decode_step

__all__ = [
    "ReplayInterpreter",
    "ReplayReport",
    "build_replay_script",
    "ReplayScript",
    "ReplayStep",
    "decode_step",
]
