"""``--exec`` command templates.

A template is a command line split into argv tokens with shell-like quoting
(``shlex``). Inside each token ``{name}`` is a placeholder and ``{{`` / ``}}``
are literal braces. The grammar is closed: only TEMPLATE_VARIABLES may be
referenced, with no conversions, format specs, or attribute/index access.
Templates are validated when parsed, so a typo fails before any task is
claimed rather than being passed to the agent literally.

Rendered commands run without a shell, so substituted values need no quoting.
"""

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from string import Formatter

TEMPLATE_VARIABLES = frozenset(
    {
        "task_id",
        "task_text",
        "plan_id",
        "plan_path",
        "plan_text",
        "pending_count",
        "open_tasks",
    }
)


class TemplateError(ValueError):
    """Invalid command template or missing render values."""

    pass


@dataclass(frozen=True)
class _Segment:
    literal: str
    field: str | None = None


@dataclass(frozen=True)
class RenderedCommand:
    """A rendered command ready to spawn.

    ``resume_base`` holds the template tokens that contain no placeholder -
    the agent binary and its flags - so a resumed session never resends the
    plan prompt. An option directly followed by a placeholder token
    (``--task {task_id}``) is dropped along with its value.
    """

    argv: list[str]
    resume_base: list[str]

    def display(self) -> str:
        return shlex.join(self.argv)


def _is_bare_option(token: str) -> bool:
    return token.startswith("-") and token != "-" and "=" not in token


def _parse_token(token: str) -> tuple[_Segment, ...]:
    segments = []
    try:
        parsed = list(Formatter().parse(token))
    except ValueError as e:
        raise TemplateError(f"Malformed placeholder in '{token}': {e}") from e

    for literal, field, format_spec, conversion in parsed:
        if field is None:
            segments.append(_Segment(literal))
            continue
        if field == "":
            raise TemplateError(f"Empty placeholder '{{}}' in '{token}'")
        if conversion is not None or format_spec:
            raise TemplateError(
                f"Placeholder '{{{field}}}' may not use conversions or format specs"
            )
        if field not in TEMPLATE_VARIABLES:
            allowed = ", ".join(sorted(TEMPLATE_VARIABLES))
            raise TemplateError(f"Unknown placeholder '{{{field}}}' (allowed: {allowed})")
        segments.append(_Segment(literal, field))
    return tuple(segments)


class CommandTemplate:
    """Parsed, validated ``--exec`` template."""

    def __init__(
        self,
        source: str,
        tokens: list[tuple[_Segment, ...]],
        resume_base: list[str] | None = None,
    ):
        self.source = source
        self._tokens = tokens
        self._resume_base = resume_base

    @classmethod
    def parse(cls, template: str, resume: str | None = None) -> "CommandTemplate":
        """Split and validate a template.

        Args:
            template: The command line to render per task.
            resume: Optional literal command line (no placeholders) used as
                the base of resumed sessions instead of the one derived from
                ``template``.

        Raises:
            TemplateError: On unbalanced quotes, malformed braces or unknown
                placeholders.
        """
        try:
            raw_tokens = shlex.split(template)
        except ValueError as e:
            raise TemplateError(f"Cannot split command template: {e}") from e
        if not raw_tokens:
            raise TemplateError("Command template is empty")
        tokens = [_parse_token(token) for token in raw_tokens]
        if any(seg.field for seg in tokens[0]):
            raise TemplateError("The command itself (first token) may not be a placeholder")
        resume_base = None
        if resume is not None:
            try:
                resume_base = shlex.split(resume)
            except ValueError as e:
                raise TemplateError(f"Cannot split resume command: {e}") from e
            if not resume_base:
                raise TemplateError("Resume command is empty")
        return cls(template, tokens, resume_base)

    @property
    def placeholders(self) -> set[str]:
        return {seg.field for token in self._tokens for seg in token if seg.field}

    def render(self, values: Mapping[str, object]) -> RenderedCommand:
        """Substitute values into every token.

        Raises:
            TemplateError: If a referenced placeholder has no value.
        """
        missing = self.placeholders - set(values)
        if missing:
            raise TemplateError(f"No value for placeholder(s): {', '.join(sorted(missing))}")

        argv: list[str] = []
        resume_base: list[str] = []
        previous_kept = False
        for token in self._tokens:
            parts = []
            for seg in token:
                parts.append(seg.literal)
                if seg.field:
                    parts.append(str(values[seg.field]).replace("\r", ""))
            rendered = "".join(parts)
            argv.append(rendered)
            if any(seg.field for seg in token):
                # "--task {task_id}": the option goes with its value
                if previous_kept and len(resume_base) > 1 and _is_bare_option(resume_base[-1]):
                    resume_base.pop()
                previous_kept = False
            else:
                resume_base.append(rendered)
                previous_kept = True
        if self._resume_base is not None:
            resume_base = list(self._resume_base)
        return RenderedCommand(argv=argv, resume_base=resume_base)
