"""Prompt templates for the AI collaborator.

Prompts are Jinja2 templates rendered in a ``SandboxedEnvironment`` with
``StrictUndefined``: issue bodies, review comments and CI logs are untrusted
input, and a prompt missing one of its variables should fail loudly rather
than reach the model half-empty.

Every prompt except ``propose_fix`` asks for a single JSON object so the
provider can parse the answer into domain types.

Example:
    >>> renderer = PromptRenderer()
    >>> prompt = renderer.render("analyze", context={"issue": {"number": 42, ...}})
"""

from typing import Any

from jinja2 import DictLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

from repo_autopilot.exceptions import AgentError

PATCH_FORMAT = """\
{"message": "<one-line commit message>", "files": [{"path": "<repository path>", "content": "<full new file content>"}]}"""

TEMPLATES = {
    "analyze": """\
You are analyzing a GitHub issue in {{ context.repository | default("the repository") }}.

Issue #{{ context.issue.number }}: {{ context.issue.title }}

{{ context.issue.body }}

Repository files:
{% for path in context.files | default([]) %}- {{ path }}
{% endfor %}
Write a short analysis of the problem and split the work into an ordered list of
small, independent actions. Each action becomes one pull request.

Answer with one JSON object and nothing else:
{"document": "<markdown analysis>", "actions": [{"name": "<kebab-case-name>", "description": "<what to change>"}]}
""",
    "implement": """\
Implement one action for issue #{{ context.issue.number }} ({{ context.issue.title }}).

Action {{ context.action_index + 1 }}: {{ action.name }}
{{ action.description }}

Work happens on branch {{ context.branch }} (pull request into {{ context.base_branch }}).

Repository files:
{% for path in context.files | default([]) %}- {{ path }}
{% endfor %}
Answer with one JSON object and nothing else:
{{ patch_format }}
""",
    "fix_failure": """\
CI failed on pull request #{{ context.pr_number }} (branch {{ context.branch }}, action {{ context.action }}).
This is fix attempt {{ context.attempt }} of {{ context.max_attempts }}.
{% if context.previous_fixes %}
Earlier fix commits did not make CI pass:
{% for fix in context.previous_fixes %}- {{ fix.sha }} ({{ fix.trigger }})
{% endfor %}{% endif %}
Failure report:
{{ logs }}

Answer with one JSON object and nothing else:
{{ patch_format }}
""",
    "propose_fix": """\
CI failed on pull request #{{ context.pr_number }} (branch {{ context.branch }}, action {{ context.action }}).

Failure report:
{{ logs }}

Describe in markdown, for a human reviewer, what causes the failure and which
change you would make to fix it. Do not answer with code only.
""",
    "respond_to_review": """\
A reviewer commented on pull request #{{ thread.pr_number }} (branch {{ thread.branch }}).

Reviewer: {{ thread.author }}
{% if thread.path %}File: {{ thread.path }}{% if thread.line %}, line {{ thread.line }}{% endif %}
{% endif %}{% if thread.diff_hunk %}
Diff:
{{ thread.diff_hunk }}
{% endif %}
Comment:
{{ thread.body }}

Reply to the reviewer. If the comment asks for a code change, include it.

Answer with one JSON object and nothing else:
{"reply": "<markdown reply>", "patch": null}

or, when you change code, with "patch" set to an object of this shape:
{{ patch_format }}
""",
}


class PromptRenderer:
    """Render the named prompt templates in a sandbox."""

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self.env = SandboxedEnvironment(
            loader=DictLoader(templates or TEMPLATES),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, name: str, **variables: Any) -> str:
        """Render a prompt.

        Raises:
            AgentError: If the template does not exist or a variable is missing
        """
        try:
            template = self.env.get_template(name)
            return template.render(patch_format=PATCH_FORMAT, **variables)
        except TemplateNotFound as e:
            raise AgentError(f"Unknown prompt template: {name}", operation=name) from e
        except Exception as e:
            raise AgentError(f"Failed to render prompt: {e}", operation=name) from e
