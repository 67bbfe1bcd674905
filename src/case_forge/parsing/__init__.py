"""Extraction, repair and bounded parsing of structured data in generator output."""

from case_forge.parsing.extractor import ExtractionResult, extract_structure, strip_code_fences
from case_forge.parsing.repairer import escape_interior_quotes, repair_json_text
from case_forge.parsing.structural_parser import ParseOutcome, ParserState, parse_structure

__all__ = [
    "ExtractionResult",
    "ParseOutcome",
    "ParserState",
    "escape_interior_quotes",
    "extract_structure",
    "parse_structure",
    "repair_json_text",
    "strip_code_fences",
]
