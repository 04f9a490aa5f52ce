"""Roleplay chat generation: macros, lore, prompt assembly, speakers, orchestration."""
