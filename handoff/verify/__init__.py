from .proof import ProofBundle, ProofMessage, ProofVerifier, build_proof
from .verifier import VerificationReport, VerificationService

__all__ = [
    "ProofBundle",
    "ProofMessage",
    "ProofVerifier",
    "build_proof",
    "VerificationReport",
    "VerificationService",
]
