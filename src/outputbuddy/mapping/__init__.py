"""Mapping parser — turns ``2+1=test.log`` style tokens into a plan."""

from outputbuddy.mapping.parser import format_token, parse_mapping, split_command
from outputbuddy.mapping.plan import Channel, RedirectionPlan, RedirectionSpec, Stream

__all__ = [
    "Channel",
    "RedirectionPlan",
    "RedirectionSpec",
    "Stream",
    "format_token",
    "parse_mapping",
    "split_command",
]
