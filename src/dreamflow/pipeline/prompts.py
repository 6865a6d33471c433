"""Prompts for the dream analysis step."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dreamflow.pipeline.context import AnalysisContext

SYSTEM_PROMPT = (
    "You are an expert dream analyst combining Jungian psychology and cognitive "
    "neuroscience. Provide comprehensive dream analysis in the exact JSON format requested."
)

ANALYSIS_SCHEMA_EXAMPLE = """{
  "sentiment": {"overall": -0.2, "progression": [0.2, -0.1], "emotional_intensity": 0.7, "polarity_shifts": 2},
  "emotions": {
    "primary": ["anxiety"], "secondary": ["hope"],
    "emotional_arc": {"beginning": ["anxiety"], "middle": ["curiosity"], "end": ["relief"]},
    "unresolved_emotions": ["fear"]
  },
  "jungian_analysis": {
    "archetypes": [{"archetype": "Shadow", "manifestation": "pursuing figure", "strength": 0.8, "interpretation": "repressed aspects"}],
    "individuation_themes": ["integration"],
    "shadow_elements": ["fear"]
  },
  "cognitive_analysis": {
    "threat_simulation": {"present": true, "type": "social rejection", "adaptive_value": "rehearsing coping"},
    "emotional_regulation": {"coping_mechanisms": ["seeking help"], "unresolved_conflicts": ["self-worth"]}
  },
  "symbols": [{
    "item": "door", "context": "blocked path",
    "personal_associations": ["barriers"], "universal_meanings": ["transition"],
    "interpretation": "life obstacles requiring new approaches", "confidence": 0.85, "emotional_charge": -0.3
  }],
  "themes": ["obstacles", "self-discovery", "transformation"],
  "narrative_structure": {"type": "linear", "coherence_score": 0.8, "resolution": "ambiguous"},
  "psychological_insights": "Interpretation connecting dream elements to psychological patterns.",
  "connections_to_previous": ["Similar patterns from past dreams"],
  "questions_to_explore": ["Key questions for deeper reflection"],
  "processing_metadata": {"analysis_version": "1.0", "model_used": "MODEL", "confidence_score": 0.82}
}"""


def build_analysis_prompt(transcript: str, context: AnalysisContext, model_name: str) -> str:
    """Build the user prompt for analyzing one dream transcript."""
    fragment = context.to_prompt_fragment()
    context_block = f"\n{fragment}\n" if fragment else ""
    schema = ANALYSIS_SCHEMA_EXAMPLE.replace("MODEL", model_name)

    return (
        "Analyze this dream using Jungian psychology and cognitive neuroscience. "
        "Provide comprehensive analysis in this JSON format:\n\n"
        f'DREAM: "{transcript}"\n'
        f"{context_block}\n"
        f"{schema}\n\n"
        "Respond with the JSON object only. The keys themes, emotions.primary, "
        "emotions.secondary and symbols (each with item and a confidence between 0 and 1) "
        "are required."
    )
