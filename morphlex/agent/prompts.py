"""Prompt templates for plan and transform-script generation.

Each prompt asks for raw output only (JSON for plans, JavaScript for
jscodeshift transforms) so responses can be used without post-editing.
"""

from __future__ import annotations

# =============================================================================
# System Prompts
# =============================================================================

SYSTEM_PROMPT = """You are Morphlex, a senior software engineer automating code refactoring.
You produce machine-consumable output only: no explanations, no markdown fences."""


# =============================================================================
# Plan Prompts
# =============================================================================

PLAN_PROMPT = """Analyze the provided code and the user's goal.
Generate a step-by-step refactoring plan. Each step must have a "step" description,
a "tool" ('git', 'npm', 'jscodeshift', 'test', 'fs') and "params" (an array of strings
for the command).

- Use 'jscodeshift' for code transformations. Its 'params' must be
  ["-t", "<TRANSFORM_SCRIPT>", "<TARGET_FILE>"].
- Use 'npm' for dependency management (e.g., install, uninstall).
- Use 'git' for version control (e.g., creating a branch).
- Use 'test' to run verification scripts (e.g., ["npm", "run", "test"]).

## Context
```
{file_content}
```

## Goal
{goal}

Respond with a JSON object following this schema:
```json
{{
  "steps": [
    {{"step": "string", "tool": "git|npm|jscodeshift|test|fs", "params": ["string"]}}
  ]
}}
```"""


# =============================================================================
# Transform Prompts
# =============================================================================

TRANSFORM_PROMPT = """You are a jscodeshift expert. Transform this code:

{file_content}

to achieve this goal: "{goal}".
Return *only* the raw JavaScript for the codemod. Do not include markdown fences or any explanations."""


CORRECTED_TRANSFORM_PROMPT = """The following codemod script failed to correctly refactor the original code.

## Original Code
```javascript
{original_code}
```

## Failed Codemod Script
```javascript
{failed_script}
```

## Test Error
```
{failure_output}
```

Analyze the original code, the failed codemod and the test error.
Generate a new, corrected codemod script that fixes the issue and performs the refactoring.

Return *only* the raw, corrected JavaScript code for the new codemod. Do not include any explanations or markdown."""


# =============================================================================
# Helper Functions
# =============================================================================

def format_plan_prompt(file_content: str, goal: str) -> str:
    """Format the plan prompt with context."""
    return PLAN_PROMPT.format(file_content=file_content, goal=goal)


def format_transform_prompt(file_content: str, goal: str) -> str:
    return TRANSFORM_PROMPT.format(file_content=file_content, goal=goal)


def format_corrected_transform_prompt(
    original_code: str,
    failed_script: str,
    failure_output: str,
) -> str:
    """Format the repair prompt for a transform that failed verification."""
    return CORRECTED_TRANSFORM_PROMPT.format(
        original_code=original_code,
        failed_script=failed_script,
        failure_output=failure_output,
    )
