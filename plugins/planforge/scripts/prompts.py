#!/usr/bin/env python3
"""
Planforge Prompt Templates

Task text for generation sessions and both merge modes. Every task asks the
agent to deliver its result by writing exactly one file: a headless agent's
final response only carries its last message, which loses content produced
across earlier turns.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from models import PlanFile

SEPARATOR = "═" * 63


def build_output_instruction(artifact_path: Path, title: str) -> str:
    """The write-one-file contract appended to every generation task."""
    return f"""

## Output format (CRITICAL)
Write the COMPLETE plan to this exact file path using the Write tool:
  {artifact_path}

Rules:
1. Do ALL your research first (read files, web search, etc.) — use as many
   turns as needed for thorough research
2. Then use the Write tool ONCE to create the file at the path above with
   the ENTIRE plan content
3. Start the file content with '# {title}'
4. Include ALL sections in that single Write call — do not split the plan
   across multiple Write calls
5. Do NOT write to .claude/plans/ or any other path — ONLY the path above
6. After writing the file, output a brief confirmation (e.g., 'Plan written
   to {artifact_path}')"""


def build_generation_prompt(
    base_prompt: str,
    guidance: str,
    artifact_path: Path,
    title: str,
) -> str:
    """Base task + variant guidance + output contract."""
    guidance_section = f"\n\n{guidance.strip()}" if guidance.strip() else ""
    return f"{base_prompt.rstrip()}{guidance_section}{build_output_instruction(artifact_path, title)}"


def _dimension_list(dimensions: Sequence[str], indent: str = "   ") -> str:
    return "\n".join(f"{indent}- {d}" for d in dimensions)


def build_synthesis_prompt(
    plans: List[PlanFile],
    merged_path: Path,
    dimensions: Sequence[str],
    title: Optional[str] = None,
) -> str:
    """Headless merge task with every plan embedded in full."""
    title = title or "Implementation Plan (Merged)"
    parts = [f"""\
You are an expert technical architect. Below are {len(plans)} implementation
plans for the same project, each generated with different focus areas.

Your task:
1. Produce a COMPARISON TABLE for each dimension:
{_dimension_list(dimensions)}

2. For each dimension, identify the WINNER with a one-sentence justification.

3. Produce a MERGED PLAN that takes the best of each:
   - Use the winner's approach for each dimension
   - Resolve any conflicts between dimensions coherently
   - The merged plan should be a complete, standalone implementation blueprint
   - Include all sections from the original prompt (stages, code examples,
     testing plan, PR breakdown, risks, etc.)

IMPORTANT: The merged plan must be COMPLETE and ACTIONABLE — a developer
should be able to implement from it without referencing the source plans.
"""]

    for plan in plans:
        parts.append(f"""
{SEPARATOR}
PLAN: {plan.variant}
{SEPARATOR}

{plan.read()}
""")

    parts.append(f"""

## Output format (CRITICAL)
Write the COMPLETE merged plan to this exact file path using the Write tool:
  {merged_path}

Rules:
1. Read and analyze ALL plans above first
2. Then use the Write tool ONCE to create the file at the path above with
   the ENTIRE merged plan content
3. Start the file content with '# {title}'
4. Include ALL sections in that single Write call — do not split across
   multiple Write calls
5. Do NOT write to .claude/plans/ or any other path — ONLY the path above
6. After writing the file, output a brief confirmation
""")
    return "".join(parts)


def build_debate_prompt(
    plans: List[PlanFile],
    merged_path: Path,
    dimensions: Sequence[str],
) -> str:
    """Interactive merge task: one advocate per plan plus a coordinating lead."""
    advocates = []
    for i, plan in enumerate(plans, 1):
        advocates.append(f"""\
- **Advocate {i} ({plan.variant})**: Read `{plan.path}` and become
  its champion. Argue for its approach in each dimension. Challenge the other
  advocates' plans where yours is stronger. Concede where yours is weaker.
  Be specific — cite exact sections, trade-offs, and code examples.
""")

    return f"""\
# Agent Teams Merge — Competing Advocates

I have generated multiple implementation plans for the same project.
Each plan was generated with a different focus. Your job is to merge the
best elements into one final plan.

## Instructions

Create an agent team with these teammates:

{chr(10).join(advocates)}

## Team lead role

You (the lead) will:
1. Have each advocate present their plan's strengths (2-3 min each)
2. Facilitate a structured debate across these dimensions:
{_dimension_list(dimensions)}
3. After the debate, produce:
   - A comparison table with the winner per dimension + justification
   - A COMPLETE merged plan taking the best of each
   - The merged plan must be standalone — a developer implements from it alone

## Constraints for advocates
- Use delegate mode — do NOT implement anything yourself, only coordinate
- Require advocates to READ their assigned plan file before debating
- Each advocate must identify at least 2 weaknesses in their OWN plan
- Each advocate must identify at least 2 strengths in a COMPETING plan

## Output (CRITICAL)
Write the final merged plan to this exact file path using the Write tool:
  {merged_path}
"""


def build_debate_kickoff(prompt_path: Path, run_dir: Path) -> str:
    """Initial message handed to the interactive session."""
    return (
        f"Read the merge prompt at {prompt_path} and follow its instructions. "
        f"The plan files are in {run_dir}/."
    )


def build_headless_kickoff(prompt_path: Path, merged_path: Path) -> str:
    """Command-line task for the headless merge session.

    The synthesis prompt embeds every plan and can exceed the per-argument
    size limit, so the session reads it from disk.
    """
    return (
        f"Read the merge prompt at {prompt_path} and follow its instructions. "
        f"Write the merged plan to {merged_path} with a single Write call."
    )
