"""Creative direction and sub-task planning for a new job.

Runs inside the Initiating stage:

1. derive_brief() asks the optional BriefWriter for a visual prompt, slogan
   and voiceover script. Any failure falls back to a template brief built
   from the product facts, so creative research never fails a job.
2. build_plan() turns the spec (and brief) into the named sub-tasks the
   coordinator starts: mandatory video render(s), optional voiceover(s).

Sub-task Naming:
    single scene   "video" (mandatory), "voice" (optional)
    multi-scene    "scene:<id>:video" (mandatory), "scene:<id>:voice" (optional)
    extension      "video" (mandatory, EXTEND_VIDEO), no voice
"""

import asyncio

from adstudio.clients.base import BriefWriter
from adstudio.constants import (
    VIDEO_RESULT_KEY,
    VIDEO_SUBTASK,
    VOICE_RESULT_KEY,
    VOICE_SUBTASK,
)
from adstudio.models import CreativeBrief, OperationKind, SubTaskPlan
from adstudio.schemas.job import JobSpec
from adstudio.utils.logging import get_logger

log = get_logger(__name__)


def fallback_brief(spec: JobSpec) -> CreativeBrief:
    """Template brief used when creative research is unavailable or fails."""
    intro = f"Start with: {spec.intro_text}. " if spec.intro_text else ""
    outro = f"End with: {spec.outro_text}. " if spec.outro_text else ""
    visual_prompt = (
        f'High-end commercial for "{spec.name}". {intro}'
        "Scene: Dynamic product close-ups with professional studio lighting. "
        "Atmosphere: Premium and detailed. Action: High-quality product demonstration. "
        f"{outro}4k resolution, cinematic quality."
    )
    voiceover = f"Discover the innovation behind {spec.name}."
    if spec.description:
        voiceover += f" {spec.description.rstrip('.')}."
    voiceover += " The future is here."
    return CreativeBrief(
        visual_prompt=visual_prompt,
        slogan=f"{spec.name.upper()}: REDEFINED.",
        voiceover_script=voiceover,
    )


async def derive_brief(spec: JobSpec, writer: BriefWriter | None = None) -> CreativeBrief:
    """Derive creative direction, falling back to the template on any failure."""
    if writer is None:
        return fallback_brief(spec)
    try:
        brief = await writer.write_brief(spec)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.warning("creative_brief_fallback", product=spec.name, error=str(exc))
        return fallback_brief(spec)

    if not (brief.visual_prompt and brief.slogan and brief.voiceover_script):
        log.warning("creative_brief_incomplete", product=spec.name)
        return fallback_brief(spec)
    return brief


def final_video_prompt(brief: CreativeBrief) -> str:
    """Visual prompt with the slogan overlay instruction appended."""
    return (
        f"{brief.visual_prompt} Feature a professional slogan overlay that says: "
        f'"{brief.slogan}". Polished marketing aesthetics.'
    )


def build_plan(spec: JobSpec, brief: CreativeBrief | None) -> tuple[SubTaskPlan, ...]:
    """Build the ordered sub-task plan for a job.

    Args:
        spec: The frozen job input.
        brief: Creative direction; ignored for extensions.

    Returns:
        Sub-tasks in start order. Always contains at least one mandatory entry.
    """
    if spec.extend_from is not None:
        prompt = spec.extend_prompt or "Continue the action naturally."
        return (
            SubTaskPlan(
                name=VIDEO_SUBTASK,
                kind=OperationKind.EXTEND_VIDEO,
                params={
                    "prompt": f"Smoothly extend the previous sequence: {prompt}",
                    "video_uri": spec.extend_from,
                    "aspect_ratio": spec.aspect_ratio,
                },
                mandatory=True,
                result_key=VIDEO_RESULT_KEY,
            ),
        )

    if brief is None:
        brief = fallback_brief(spec)
    image = spec.images[0]
    image_params = {"mime_type": image.mime_type, "data": image.data}

    if not spec.scenes:
        return (
            SubTaskPlan(
                name=VIDEO_SUBTASK,
                kind=OperationKind.VIDEO,
                params={
                    "prompt": final_video_prompt(brief),
                    "image": image_params,
                    "aspect_ratio": spec.aspect_ratio,
                },
                mandatory=True,
                result_key=VIDEO_RESULT_KEY,
            ),
            SubTaskPlan(
                name=VOICE_SUBTASK,
                kind=OperationKind.VOICE,
                params={"text": brief.voiceover_script, "voice": spec.voice},
                mandatory=False,
                result_key=VOICE_RESULT_KEY,
            ),
        )

    plan: list[SubTaskPlan] = []
    for scene in spec.scenes:
        prefix = f"scene:{scene.scene_id}"
        plan.append(
            SubTaskPlan(
                name=f"{prefix}:{VIDEO_SUBTASK}",
                kind=OperationKind.VIDEO,
                params={
                    "prompt": f"{scene.visual_instruction} Slogan: \"{brief.slogan}\".",
                    "image": image_params,
                    "aspect_ratio": spec.aspect_ratio,
                },
                mandatory=True,
                result_key=f"{prefix}:{VIDEO_RESULT_KEY}",
                scene_id=scene.scene_id,
            )
        )
        if scene.voiceover_text:
            plan.append(
                SubTaskPlan(
                    name=f"{prefix}:{VOICE_SUBTASK}",
                    kind=OperationKind.VOICE,
                    params={"text": scene.voiceover_text, "voice": spec.voice},
                    mandatory=False,
                    result_key=f"{prefix}:{VOICE_RESULT_KEY}",
                    scene_id=scene.scene_id,
                )
            )
    return tuple(plan)
