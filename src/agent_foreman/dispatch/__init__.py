"""Ticket parsing, role classification and assignment."""

from agent_foreman.dispatch.dispatcher import AgentTask, Assignment, Dispatcher, DispatchStatus, branch_name_for
from agent_foreman.dispatch.roles import DEFAULT_ROLES, RoleSpec, RoleTableError, load_role_table
from agent_foreman.dispatch.rules import Classification, classify
from agent_foreman.dispatch.tickets import (
    DispatchError,
    Ticket,
    TicketParseError,
    UnknownTicketError,
    parse_tickets,
)

__all__ = [
    "DEFAULT_ROLES",
    "AgentTask",
    "Assignment",
    "Classification",
    "DispatchError",
    "DispatchStatus",
    "Dispatcher",
    "RoleSpec",
    "RoleTableError",
    "Ticket",
    "TicketParseError",
    "UnknownTicketError",
    "branch_name_for",
    "classify",
    "load_role_table",
    "parse_tickets",
]
