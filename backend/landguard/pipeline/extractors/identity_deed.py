"""Stage 1 — identity document + sale deed.

Extracts the purchaser from the PAN card and the parties from the deed,
then reconciles the model's fuzzy-match verdict with a deterministic
name-similarity score before the gate is applied.
"""

from __future__ import annotations

import logging

from landguard.config import TRACE_ENABLED
from landguard.pipeline.errors import IdentityMismatch, MalformedResponse
from landguard.pipeline.extractors.base import ClaimExtractor, MediaPayload, StageInstruction
from landguard.pipeline.gemini_client import LLMProgressCallback
from landguard.pipeline.schemas import IdentityDeedExtraction, Stage1Claim
from landguard.pipeline.utils import best_name_match, classify_name_match

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


IDENTITY_DEED_PROMPT = """
You are an expert legal verification assistant for Indian land records.

Two documents are attached, in this order:
1. Identity proof: a PAN card (image).
2. Sale deed: the property ownership document (PDF or image).

TASKS

1. From the PAN card extract the cardholder's full name and father's name.

2. From the sale deed extract:
   - The BUYER / PURCHASER. Look for sections headed 'Purchaser', 'Vendee',
     'Buyer' or 'Claimant'.
   - The SELLER / VENDOR. Look for 'Seller', 'Vendor', 'Executant' or
     'Transferor'.  Never copy the seller's name into the buyer field: the
     deed is usually written in the seller's voice, so the first name on the
     page is often the seller.
   - The survey number (R.S. No, T.S. No, S.F. No or "Survey No" in the
     Schedule of Property) exactly as printed.
   - The land status (Freehold, Private Land, Ancestral, Agricultural, ...).
   - The total area / extent exactly as printed, with units.
   - The district.

3. Compare the PAN name with the deed buyer name using FUZZY matching:
   "S. Kumar" matches "Suresh Kumar", "Abhishek R" matches "Abhishek Rao".
   Ignore initials, a missing middle name and transliteration spelling
   differences when the primary names align.
     MATCHED  — unambiguously the same person
     PARTIAL  — plausible but incomplete correspondence
     MISMATCH — no reasonable correspondence
   Give a 0-100 confidence and a one or two sentence explanation.

4. Look for the official Sub-Registrar round seal.  Describe it if found
   (location, text, ink colour).  Report whether the deed is printed on
   stamp paper.
"""

IDENTITY_DEED_INSTRUCTION = StageInstruction(
    task_label="Stage 1 · Identity & Deed",
    prompt=IDENTITY_DEED_PROMPT,
    claim_model=IdentityDeedExtraction,
)


def reconcile_match(extraction: IdentityDeedExtraction) -> Stage1Claim:
    """Combine the model verdict with a deterministic similarity score.

      MATCHED + deterministic MISMATCH → PARTIAL
      PARTIAL + deterministic MATCHED  → MATCHED
      MISMATCH                         → never upgraded
    """
    similarity, matched_as = best_name_match(
        extraction.purchaser_name, [extraction.deed_buyer_name],
    )
    deterministic = classify_name_match(similarity)
    status = extraction.match_status
    explanation = extraction.match_explanation.strip()

    _trace(f"STAGE1 pan={extraction.purchaser_name!r} buyer={extraction.deed_buyer_name!r} "
           f"model={status} sim={similarity:.3f} ({deterministic}) via {matched_as!r}")

    if status == "MATCHED" and deterministic == "MISMATCH":
        status = "PARTIAL"
        explanation = (explanation + " " if explanation else "") + (
            f"Downgraded to PARTIAL: name similarity is only {similarity:.0%}."
        )
        logger.info(f"Stage 1 verdict downgraded MATCHED → PARTIAL (similarity {similarity:.2f})")
    elif status == "PARTIAL" and deterministic == "MATCHED":
        status = "MATCHED"
        explanation = (explanation + " " if explanation else "") + (
            f"Upgraded to MATCHED: name similarity is {similarity:.0%}."
        )
        logger.info(f"Stage 1 verdict upgraded PARTIAL → MATCHED (similarity {similarity:.2f})")

    if not explanation:
        explanation = {
            "MATCHED": "PAN name and deed buyer name refer to the same person.",
            "PARTIAL": "PAN name and deed buyer name correspond only partially.",
            "MISMATCH": "PAN name and deed buyer name do not correspond.",
        }[status]

    return Stage1Claim(
        **extraction.model_dump(exclude={"match_status", "match_explanation"}),
        match_status=status,
        match_explanation=explanation,
        name_similarity=round(similarity, 4),
    )


async def verify_identity_and_deed(
    pan: MediaPayload,
    deed: MediaPayload,
    on_progress: LLMProgressCallback | None = None,
) -> Stage1Claim:
    """Run Stage 1 extraction and return the reconciled claim.

    The gate is not applied here; see ``enforce_identity_gate``.

    Raises:
        MalformedResponse: no purchaser name could be read
        ExtractionError: inference failed
    """
    logger.info(f"Stage 1: PAN {len(pan.data)} bytes ({pan.mime_type}), "
                f"deed {len(deed.data)} bytes ({deed.mime_type})")
    extractor = ClaimExtractor(on_progress=on_progress)
    extraction = await extractor.extract(IDENTITY_DEED_INSTRUCTION, [pan, deed])

    if not extraction.purchaser_name.strip():
        raise MalformedResponse(
            "Could not read the cardholder name from the identity document",
            raw_text=extraction.model_dump_json(),
        )

    claim = reconcile_match(extraction)
    logger.info(f"Stage 1 result: {claim.match_status} (confidence {claim.confidence_score}, "
                f"similarity {claim.name_similarity:.2f}), survey {claim.survey_number!r}")
    return claim


def enforce_identity_gate(claim: Stage1Claim) -> None:
    """Raise ``IdentityMismatch`` when the claim must halt the pipeline."""
    if claim.match_status == "MISMATCH":
        raise IdentityMismatch(details=claim.match_explanation)
