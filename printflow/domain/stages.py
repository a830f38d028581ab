# printflow/domain/stages.py
from enum import Enum


class Stage(str, Enum):
    QUEUED = "queued"
    GENERATING_BRIEF = "generating_brief"
    GENERATING_IMAGES = "generating_images"
    COMPOSITING = "compositing"
    PREPARING_PRINT = "preparing_print"
    GENERATING_MOCKUPS = "generating_mockups"
    UPLOADING = "uploading"
    READY = "ready"
    FAILED = "failed"


STAGE_ORDER = [
    Stage.QUEUED,
    Stage.GENERATING_BRIEF,
    Stage.GENERATING_IMAGES,
    Stage.COMPOSITING,
    Stage.PREPARING_PRINT,
    Stage.GENERATING_MOCKUPS,
    Stage.UPLOADING,
    Stage.READY,
]

# progress floor per stage, progress never drops below it
STAGE_PROGRESS_FLOOR = {
    Stage.QUEUED: 0,
    Stage.GENERATING_BRIEF: 5,
    Stage.GENERATING_IMAGES: 15,
    Stage.COMPOSITING: 45,
    Stage.PREPARING_PRINT: 60,
    Stage.GENERATING_MOCKUPS: 70,
    Stage.UPLOADING: 85,
    Stage.READY: 100,
}

STAGE_MESSAGES = {
    Stage.QUEUED: "Waiting for a designer",
    Stage.GENERATING_BRIEF: "Writing the design brief",
    Stage.GENERATING_IMAGES: "Generating artwork",
    Stage.COMPOSITING: "Compositing layers",
    Stage.PREPARING_PRINT: "Preparing print files",
    Stage.GENERATING_MOCKUPS: "Rendering product mockups",
    Stage.UPLOADING: "Uploading files",
    Stage.READY: "Your design is ready",
    Stage.FAILED: "Design generation failed",
}

TERMINAL_STAGES = {Stage.READY, Stage.FAILED}


def stage_index(stage: Stage | str) -> int:
    """Position in the forward order; ``failed`` sorts after every stage."""
    stage = Stage(stage)
    if stage is Stage.FAILED:
        return len(STAGE_ORDER)
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage | str) -> Stage | None:
    idx = stage_index(stage)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def is_terminal(stage: Stage | str) -> bool:
    return Stage(stage) in TERMINAL_STAGES
