"""Per-type node processors. Each takes a NodeContext and returns a NodeOutput or raises."""

from flowcore.graph.processors.code import run_code
from flowcore.graph.processors.http import run_http
from flowcore.graph.processors.input import run_input, run_trigger
from flowcore.graph.processors.logic import run_condition, run_merge, run_switch
from flowcore.graph.processors.loop import run_loop
from flowcore.graph.processors.media import run_image_gen, run_media
from flowcore.graph.processors.notification import run_notification
from flowcore.graph.processors.output import run_output
from flowcore.graph.processors.process import run_process

__all__ = [
    "run_code",
    "run_condition",
    "run_http",
    "run_image_gen",
    "run_input",
    "run_loop",
    "run_media",
    "run_merge",
    "run_notification",
    "run_output",
    "run_process",
    "run_switch",
    "run_trigger",
]
