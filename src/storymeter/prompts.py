"""Prompt templates for the metered AI operations."""

from storymeter.services.usage import UsageType

MAX_CONTEXT_CHARS = 2000

PROJECT_TYPES = {
    "shortfilm": "short film (5-30 minutes)",
    "screenplay": "feature film screenplay (90-120 pages)",
    "shortstory": "short story (1,500-7,500 words)",
    "novel": "novel (50,000-100,000 words)",
    "webseries": "web series (5-15 minute episodes)",
    "documentary": "documentary film",
    "podcast": "narrative podcast",
    "story": "creative story",
}

STEPS = {
    "idea": "brainstorming and developing the core concept",
    "logline": "crafting a one-sentence summary that hooks readers",
    "treatment": "writing the prose overview of the full story",
    "characters": "developing multi-dimensional characters",
    "scenes": "structuring and breaking down individual scenes",
    "script": "writing dialogue, action lines and screenplay format",
    "synopsis": "writing a compelling story summary",
    "storyboard": "visualizing scenes through storyboards",
}

GENERATION_INSTRUCTIONS: dict[UsageType, str] = {
    UsageType.IDEA: "Expand the following seed into three distinct story ideas, one paragraph each.",
    UsageType.LOGLINE: (
        "Write one logline (25-30 words) in the form [Protagonist] must [goal] before "
        "[stakes]. Use active voice and present tense and do not reveal the ending."
    ),
    UsageType.TREATMENT: "Write a prose treatment covering the beginning, middle and end.",
    UsageType.SYNOPSIS: "Write a one-page synopsis in present tense.",
    UsageType.PLOT_POINTS: "List the major plot points as a numbered list of story beats.",
    UsageType.CHARACTER_GENERATION: (
        "Create the main characters with name, role, want, need, flaw and arc."
    ),
    UsageType.SCENES: "Break the story into numbered scenes with a heading and a short summary.",
    UsageType.SCRIPT: "Write the scene in standard screenplay format.",
    UsageType.DIALOGUE: "Write the dialogue for the scene, keeping each voice distinct.",
    UsageType.FULL_SCRIPT: "Write the complete script in standard screenplay format.",
}

GENERATION_OPERATIONS = frozenset(GENERATION_INSTRUCTIONS)


def build_chat_system_prompt(
    project_type: str | None = None,
    current_step: str | None = None,
    context: str | None = None,
) -> str:
    project = PROJECT_TYPES.get(project_type or "shortfilm", "creative project")
    step = STEPS.get(current_step or "idea", current_step or "their creative work")

    prompt = (
        "You are an expert writing assistant on an AI storytelling platform, helping a "
        f"writer craft their {project}. Give specific, actionable advice and honest, "
        "constructive feedback.\n\n"
        f"Project type: {project}\nCurrent step: {step}\n"
    )
    if context and context.strip():
        truncated = context[:MAX_CONTEXT_CHARS]
        if len(context) > MAX_CONTEXT_CHARS:
            truncated += "\n[...content truncated]"
        prompt += f"\nWriter's current content:\n---\n{truncated}\n---\n"
    else:
        prompt += "\nWriter's current content: (nothing written yet)\n"
    return prompt


def build_generation_prompt(operation: UsageType, source: str, language: str = "English") -> str:
    instruction = GENERATION_INSTRUCTIONS[operation]
    return f"{instruction}\nRespond in {language}.\n\nSource material:\n{source}"


def build_storyboard_prompt(scene_description: str, style: str | None = None) -> str:
    return (
        "Turn this scene into a single image-generation prompt for a storyboard frame. "
        "Describe the shot type, framing, lighting and the characters' positions in one "
        f"paragraph{f', in a {style} style' if style else ''}.\n\nScene:\n{scene_description}"
    )
