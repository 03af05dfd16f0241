# src/prompts/analysis_prompts.py
"""
Analysis prompts.

Differential diagnosis request built from the whole transcript.
"""

# ============================================================================
# DIFFERENTIAL DIAGNOSIS
# ============================================================================

REQUEST_TEMPLATE = """
Based on the following patient interview transcript, generate a differential diagnosis and map symptoms to conditions.
Output ONLY valid JSON with exactly this structure:
{{
  "diagnoses": [
    {{
      "name": "name of the medical condition",
      "probability": 0-100 integer,
      "description": "brief explanation of why this fits",
      "urgency": "Low" | "Medium" | "High" | "Critical",
      "recommendedAction": "next step, e.g. go to the emergency room"
    }}
  ],
  "symptomConnections": [
    {{
      "symptom": "a specific symptom reported by the patient",
      "condition": "the diagnosis name it points to",
      "strength": 1-10 integer
    }}
  ]
}}

Give the top 3-5 potential diagnoses. Every "condition" must repeat the "name" of one of the diagnoses.
IMPORTANT: All text fields (name, description, recommendedAction, symptom, condition) MUST be in {target_language}.
The "urgency" field must remain one of the English enum values: "Low", "Medium", "High", "Critical".

TRANSCRIPT:
{transcript}
"""
