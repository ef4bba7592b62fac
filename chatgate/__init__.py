"""chatgate — authenticated, rate-limited chatbot completion proxy."""
