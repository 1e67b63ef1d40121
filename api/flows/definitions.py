"""
Lead qualification flow definition.
"""

from .engine import FlowDefinition, FlowStep, Stage


def get_lead_qualification_flow() -> FlowDefinition:
    """Greeting, name, role, email, meeting slot, confirmation."""
    return FlowDefinition(
        id="lead_qualification",
        name="Lead Qualification",
        steps={
            Stage.INITIAL: FlowStep(
                stage=Stage.INITIAL,
                prompt_text=(
                    "Greet the contact warmly, introduce yourself in one sentence "
                    "and ask for their name."
                ),
            ),
            Stage.COLLECT_NAME: FlowStep(
                stage=Stage.COLLECT_NAME,
                prompt_text="Collect the contact's full name.",
                entity_field="name",
            ),
            Stage.COLLECT_ROLE: FlowStep(
                stage=Stage.COLLECT_ROLE,
                prompt_text="Ask which role or function the contact holds at their company.",
                entity_field="role",
            ),
            Stage.COLLECT_EMAIL: FlowStep(
                stage=Stage.COLLECT_EMAIL,
                prompt_text="Ask for a corporate email address to send the meeting invite.",
                entity_field="email",
            ),
            Stage.OFFER_SLOTS: FlowStep(
                stage=Stage.OFFER_SLOTS,
                prompt_text=(
                    "Offer a meeting. Set needsSlotOffer=true when the list of "
                    "times should be shown. When the contact picks a number, "
                    "set requestsBooking=true and extractedFields.slot to it."
                ),
                offers_slots=True,
            ),
            Stage.CONFIRM_BOOKING: FlowStep(
                stage=Stage.CONFIRM_BOOKING,
                prompt_text=(
                    "The meeting is booked. Confirm the contact has everything "
                    "they need and close the conversation politely."
                ),
            ),
            Stage.COMPLETED: FlowStep(
                stage=Stage.COMPLETED,
                prompt_text="The qualification is complete. Answer briefly and kindly.",
            ),
        },
    )
