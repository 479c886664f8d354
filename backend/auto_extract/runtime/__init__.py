"""Local llama.cpp server lifecycle."""
