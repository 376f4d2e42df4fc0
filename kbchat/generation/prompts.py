"""
Prompt templates and fixed replies for the chat generator and the
sentiment monitor.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""

# ---------------------------------------------------------------------------
# Conversational system prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT_WITH_CONTEXT = """\
You are a helpful AI assistant. {persona}\
Use the following context to answer questions when relevant:

{context}

If the context doesn't contain relevant information, use your general knowledge."""

SYSTEM_PROMPT_NO_CONTEXT = """\
You are a helpful AI assistant. {persona}\
Answer questions using your general knowledge."""

PERSONA_TEMPLATE = "Your personality is {personality}; keep a {style} communication style. "

ESCALATED_GUIDANCE = (
    "\n\nThe user has shown frustration earlier in this conversation. Be especially "
    "patient and empathetic, acknowledge their concern, and offer to connect them "
    "with a human team member if you cannot resolve the issue."
)

# ---------------------------------------------------------------------------
# Fixed replies (never sent to the model)
# ---------------------------------------------------------------------------

DEMO_MODE_RESPONSE = (
    "I'm currently in demo mode. To enable full AI capabilities, "
    "please configure your OpenAI API key."
)

EMPTY_COMPLETION_RESPONSE = "I apologize, but I was unable to generate a response."

TURN_FAILURE_RESPONSE = "I'm experiencing some technical difficulties. Please try again later."

ESCALATION_RESPONSE = (
    "I'm sorry this has been frustrating. I want to make sure you get the help you "
    "need, so I've flagged this conversation for a member of our team. In the "
    "meantime, I'll do my best to help."
)

# ---------------------------------------------------------------------------
# Sentiment classification
# ---------------------------------------------------------------------------

SENTIMENT_SYSTEM_PROMPT = """\
You are a sentiment analysis expert. Analyze the sentiment of the following \
conversation messages and determine if the user seems unhappy or frustrated.

Respond with ONLY a JSON object in this exact format:
{
  "sentiment": "happy" | "neutral" | "unhappy",
  "confidence": 0.0-1.0,
  "shouldEscalate": boolean
}

Guidelines:
- "happy": User is satisfied, positive, or expressing gratitude
- "neutral": Normal conversation, no strong emotions
- "unhappy": User is frustrated, angry, confused, or expressing dissatisfaction
- shouldEscalate should be true if sentiment is "unhappy" and confidence > 0.7
- Consider the overall tone and context of the conversation"""
