"""Operator records: save-time validation and id resolution.

Every record the triggers read passes through here before it reaches the
store, so malformed configuration is rejected when the operator saves it
rather than when a batch is already selected:

    - channels must satisfy their type's required fields (ConfigError)
    - templates must compile (CompileError)
    - tasks need a valid cron expression, an existing channel, and a
      template that exists and compiles
    - auto-push needs an existing channel while enabled

Resolution helpers turn stored ids into ready-to-use objects for the
Batch Composer, falling back to the default template when a task or the
auto-push configuration names none.
"""

import logging
from typing import Any

from pydantic import ValidationError

from database import Database
from models.channel import Channel, parse_channel
from models.task import AutoPushConfig, ScheduledTask
from models.template import Template
from rendering import DEFAULT_TEMPLATE, CompiledTemplate, compile_template

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """A record is missing required fields or references something unknown."""
    pass


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "record"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def save_channel(db: Database, data: dict[str, Any]) -> Channel:
    """Validate and store a channel.

    Raises:
        ConfigError: If the type is unknown or a required field is missing
    """
    try:
        channel = parse_channel(data)
    except ValidationError as e:
        raise ConfigError(f"invalid channel: {_describe(e)}") from e
    db.save_channel(channel)
    return channel


def save_template(db: Database, data: dict[str, Any]) -> Template:
    """Validate, compile and store a template.

    Raises:
        ConfigError: If required fields are missing
        CompileError: If the body or subject does not compile
    """
    try:
        template = Template.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid template: {_describe(e)}") from e
    compile_template(template.content, template.subject)
    db.save_template(template)
    return template


def _check_template_ref(db: Database, template_id: str | None) -> None:
    if not template_id:
        return
    template = db.get_template(template_id)
    if template is None:
        raise ConfigError(f"template not found: {template_id}")
    compile_template(template.content, template.subject)


def _check_channel_ref(db: Database, channel_id: str) -> None:
    if db.get_channel(channel_id) is None:
        raise ConfigError(f"channel not found: {channel_id}")


def save_task(db: Database, data: dict[str, Any]) -> ScheduledTask:
    """Validate and store a scheduled task.

    Raises:
        ConfigError: On an invalid cron expression or an unknown channel/template
        CompileError: If the attached template no longer compiles
    """
    try:
        task = ScheduledTask.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid task: {_describe(e)}") from e

    existing = db.get_task(task.id)
    if existing is not None and task.last_run_at is None:
        task = task.model_copy(update={"last_run_at": existing.last_run_at})

    _check_channel_ref(db, task.channel_id)
    _check_template_ref(db, task.template_id)
    db.save_task(task)
    return task


def save_auto_push(db: Database, data: dict[str, Any]) -> AutoPushConfig:
    """Validate and store the auto-push configuration.

    Raises:
        ConfigError: If enabled without an existing channel, or the threshold is < 1
        CompileError: If the attached template does not compile
    """
    try:
        config = AutoPushConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid auto-push config: {_describe(e)}") from e

    if config.enabled:
        if not config.channel_id:
            raise ConfigError("auto-push requires a channel")
        _check_channel_ref(db, config.channel_id)
    _check_template_ref(db, config.template_id)
    db.save_auto_push(config)
    return config


def delete_channel(db: Database, channel_id: str) -> bool:
    """Delete a channel that no task or auto-push configuration uses.

    Raises:
        ConfigError: If the channel is still referenced
    """
    users = [t.name for t in db.list_tasks() if t.channel_id == channel_id]
    if users:
        raise ConfigError(f"channel {channel_id} is used by tasks: {', '.join(users)}")
    auto = db.load_auto_push()
    if auto.enabled and auto.channel_id == channel_id:
        raise ConfigError(f"channel {channel_id} is used by auto-push")
    return db.delete_channel(channel_id)


def delete_template(db: Database, template_id: str) -> bool:
    """Delete a template that no task or auto-push configuration uses.

    Raises:
        ConfigError: If the template is still referenced
    """
    users = [t.name for t in db.list_tasks() if t.template_id == template_id]
    if users:
        raise ConfigError(f"template {template_id} is used by tasks: {', '.join(users)}")
    auto = db.load_auto_push()
    if auto.enabled and auto.template_id == template_id:
        raise ConfigError(f"template {template_id} is used by auto-push")
    return db.delete_template(template_id)


def resolve_channel(db: Database, channel_id: str) -> Channel:
    """Load a channel for sending.

    Raises:
        ConfigError: If the channel is missing or its stored config is invalid
    """
    try:
        channel = db.get_channel(channel_id)
    except ValidationError as e:
        raise ConfigError(f"stored channel {channel_id} is invalid: {_describe(e)}") from e
    if channel is None:
        raise ConfigError(f"channel not found: {channel_id}")
    return channel


def resolve_template(db: Database, template_id: str | None) -> CompiledTemplate:
    """Compile the template a trigger should render.

    Falls back to the stored default template, then to the built-in one,
    when ``template_id`` is empty or no longer exists.

    Raises:
        CompileError: If the chosen stored template does not compile
    """
    template = db.get_template(template_id) if template_id else None
    if template_id and template is None:
        logger.warning("Template missing, using default | template=%s", template_id)
    if template is None:
        template = db.get_default_template()
    if template is None:
        return compile_template(DEFAULT_TEMPLATE)
    return compile_template(template.content, template.subject)
