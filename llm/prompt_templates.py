"""
Prompt Templates for the lead-qualification agent.

Builds the stage-specific prompt contract handed to the oracle: the system
prompt fixes the JSON decision schema, the user prompt carries the current
stage, known fields and the raw inbound text.
"""

import json
from typing import Dict, Optional

from api.flows.definitions import get_lead_qualification_flow
from api.flows.engine import FlowDefinition, Stage, next_stage


class PromptTemplates:
    """Manages the decision prompt templates."""

    SYSTEM_PROMPT = """You are {brand_name}'s WhatsApp assistant. You qualify business leads and book a short meeting with them.

Always answer in Brazilian Portuguese, in a warm and concise tone (at most 3 short sentences).

You never answer in free text. You return ONE JSON object with exactly these keys:
{{
  "intent": one of "greeting", "providing_info", "confirming", "question", "scheduling", "selecting_slot", "other",
  "extractedFields": {{"name": string|null, "role": string|null, "email": string|null, "slot": integer|null}},
  "replyText": the message to send to the contact,
  "nextStage": "{current_stage}" to stay, or "{next_stage}" when this stage's goal was achieved,
  "confidence": number between 0 and 1,
  "needsSlotOffer": true when the list of meeting times must be shown,
  "requestsBooking": true when the contact chose a meeting time,
  "readyToForward": true when the lead data is complete enough to hand over
}}

Use null for any field the contact did not give. Never invent values."""

    USER_TEMPLATE = """Current stage: {current_stage}
Stage goal: {stage_goal}

Known lead data:
{known_fields}

Contact's message:
\"\"\"{text}\"\"\""""

    def __init__(self, brand_name: str = "LeadFlow", flow: Optional[FlowDefinition] = None):
        self.brand_name = brand_name
        self.flow = flow or get_lead_qualification_flow()

    def system_prompt(self, stage: Stage) -> str:
        return self.SYSTEM_PROMPT.format(
            brand_name=self.brand_name,
            current_stage=stage.value,
            next_stage=next_stage(stage).value,
        )

    def user_prompt(self, stage: Stage, fields: Dict[str, Optional[str]], text: str) -> str:
        step = self.flow.step_for(stage)
        known = {k: fields.get(k) for k in self.flow.collected_fields()}
        return self.USER_TEMPLATE.format(
            current_stage=stage.value,
            stage_goal=step.prompt_text if step else "Answer briefly and kindly.",
            known_fields=json.dumps(known, ensure_ascii=False, indent=2),
            text=text,
        )
