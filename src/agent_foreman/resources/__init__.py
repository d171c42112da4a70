"""Usage accounting, cost ceilings and process sampling."""

from agent_foreman.resources.governor import (
    ResourceAlert,
    ResourceError,
    ResourceGovernor,
    TrackedCall,
    UnknownSessionError,
    UsageReport,
)
from agent_foreman.resources.pricing import DEFAULT_PRICE, ModelPrice, calculate_cost, price_for
from agent_foreman.resources.sampler import ProcessSample, SessionSampler, take_sample

__all__ = [
    "DEFAULT_PRICE",
    "ModelPrice",
    "ProcessSample",
    "ResourceAlert",
    "ResourceError",
    "ResourceGovernor",
    "SessionSampler",
    "TrackedCall",
    "UnknownSessionError",
    "UsageReport",
    "calculate_cost",
    "price_for",
    "take_sample",
]
