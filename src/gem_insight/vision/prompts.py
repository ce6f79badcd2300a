"""System and user prompts for each vision task kind."""

from __future__ import annotations

from typing import Sequence

from gem_insight.models import TaskKind

_JSON_ONLY = "Respond with a single JSON object and nothing else. Do not add keys that are not listed."

CUT_SYSTEM_PROMPT = """
You are a gemologist identifying the cut (shape) of a loose gemstone from photographs.
Allowed cut values: {cuts}.
Look at the outline and facet arrangement. Step-cut rectangles with cut corners are "emerald";
square step cuts are "asscher"; pointed ovals are "marquise".
Return JSON with exactly these keys:
  "detected_cut": one of the allowed cut values,
  "confidence": number between 0 and 1,
  "reasoning": one or two sentences describing the visual evidence,
  "matches_metadata": true/false comparing your answer with the declared cut, or null when none is declared.
""".strip()

COLOR_SYSTEM_PROMPT = """
You are a gemologist describing the body color of a loose gemstone from photographs.
Allowed color values: {colors}.
Ignore reflections, background and lighting tints; judge the face-up body color.
Return JSON with exactly these keys:
  "detected_color": one of the allowed color values,
  "confidence": number between 0 and 1,
  "color_description": a short descriptive phrase such as "medium bluish green",
  "reasoning": one or two sentences describing the visual evidence,
  "matches_metadata": true/false comparing your answer with the declared color, or null when none is declared.
""".strip()

PRIMARY_SYSTEM_PROMPT = """
You choose the best catalog photo of a gemstone for an online store.
Images are numbered from 0 in the order given.
Score every image from 0 to 1 on quality, composition, clarity and professional_presentation,
and give an overall score. Classify each image as one of:
clean_subject, acceptable_subject, certificate, label, measurement_tool, packaging, unknown.
Photos showing calipers, gauges, scales or rulers are measurement_tool and score at most 0.4 overall.
Return JSON with exactly these keys:
  "selected_index": index of the best image,
  "reasoning": one or two sentences explaining the choice,
  "image_scores": list of objects with keys index, quality, composition, clarity,
                  professional_presentation, overall, classification, issues (list of short strings).
""".strip()

LABEL_SYSTEM_PROMPT = """
You read handwritten or printed labels, tags and certificates photographed next to a gemstone.
Labels may be in Russian and use comma decimals ("4,56 ct"). Transcribe the text verbatim,
translate it to English, then extract readings.
Reading names: weight_carats, length_mm, width_mm, depth_mm, cut, color.
Allowed cut values: {cuts}. Allowed color values: {colors}.
Return JSON with exactly these keys:
  "raw_text": the transcribed text,
  "translated_text": English translation,
  "readings": list of objects with keys name, value, unit (or null), confidence (0..1),
              source ("label_text" or "certificate_text").
Only report readings that are actually written on the label.
""".strip()

MEASUREMENT_SYSTEM_PROMPT = """
You read measuring instruments photographed with a gemstone: digital calipers, LCD gauges and jewelry scales.
Read the displayed digits exactly; do not estimate from the stone's appearance.
Caliper and gauge values are millimetres; scale values are carats unless the display shows grams
(1 g = 5 ct, convert to carats).
Reading names: weight_carats, length_mm, width_mm, depth_mm.
Return JSON with exactly these keys:
  "raw_text": the digits and units visible on the displays,
  "translated_text": a short English summary of what was measured,
  "readings": list of objects with keys name, value, unit (or null), confidence (0..1),
              source ("gauge_reading" or "scale_reading").
""".strip()


def system_prompt(kind: TaskKind, cuts: Sequence[str], colors: Sequence[str]) -> str:
    templates = {
        TaskKind.CUT_DETECTION: CUT_SYSTEM_PROMPT,
        TaskKind.COLOR_DETECTION: COLOR_SYSTEM_PROMPT,
        TaskKind.PRIMARY_IMAGE_SELECTION: PRIMARY_SYSTEM_PROMPT,
        TaskKind.LABEL_EXTRACTION: LABEL_SYSTEM_PROMPT,
        TaskKind.MEASUREMENT_EXTRACTION: MEASUREMENT_SYSTEM_PROMPT,
    }
    template = templates[kind]
    prompt = template.format(cuts=", ".join(cuts), colors=", ".join(colors))
    return f"{prompt}\n{_JSON_ONLY}"


def user_prompt(kind: TaskKind, image_count: int, declared_value: str | None = None) -> str:
    lines = [f"{image_count} image(s) of the same gemstone follow."]
    if kind is TaskKind.CUT_DETECTION:
        lines.append(f"Declared cut: {declared_value}." if declared_value else "No cut has been declared.")
    elif kind is TaskKind.COLOR_DETECTION:
        lines.append(f"Declared color: {declared_value}." if declared_value else "No color has been declared.")
    elif kind is TaskKind.PRIMARY_IMAGE_SELECTION:
        lines.append(f"Score all {image_count} images, indices 0 to {image_count - 1}.")
    return " ".join(lines)


__all__ = ["system_prompt", "user_prompt"]
