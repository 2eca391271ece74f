import logging
import secrets
import string
from typing import Callable, Optional

from .directory import MemberDirectory
from .errors import DocumentAlreadyExistsError, ExhaustedRetriesError, NotFoundError
from .models import ReferralCode, ReferrerType
from .store import DocumentStore, Filter

logger = logging.getLogger(__name__)

REFERRAL_CODES_COLLECTION = "referralCodes"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10


def generate_referral_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class ReferralCodeIssuer:
    def __init__(self, store: DocumentStore, directory: MemberDirectory,
                 code_generator: Callable[[], str] = generate_referral_code):
        self.store = store
        self.directory = directory
        self.code_generator = code_generator

    def create_referral_code(self, referrer_id: str, referrer_company_id: Optional[str],
                             referrer_type: ReferrerType) -> ReferralCode:
        """
        Issue a new unique referral code for a referrer.

        The code document is created with a create-if-absent write, so a
        collision simply means another candidate is drawn. The code is copied
        onto the referrer's directory record once it is durable; that copy is
        informational and its failure does not undo the code.
        """
        logger.info("Creating referral code for %s referrer %s", referrer_type.value, referrer_id)

        referral_code = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            candidate = ReferralCode(
                code=self.code_generator(),
                owner_id=referrer_id,
                owner_company_id=referrer_company_id,
                owner_type=referrer_type,
            )
            try:
                self.store.create_document(REFERRAL_CODES_COLLECTION, candidate.to_document(), candidate.code)
            except DocumentAlreadyExistsError:
                logger.warning("Referral code collision on attempt %d (%s), retrying", attempt, candidate.code)
                continue
            referral_code = candidate
            break

        if referral_code is None:
            raise ExhaustedRetriesError(
                "Failed to generate unique referral code after maximum attempts",
                {"attempts": MAX_CODE_ATTEMPTS},
            )

        try:
            self.directory.update_member(referrer_id, {"referralOwnCode": referral_code.code})
        except Exception:
            logger.exception("Could not store referral code %s on member %s", referral_code.code, referrer_id)

        logger.info("Referral code %s created for %s", referral_code.code, referrer_id)
        return referral_code

    def get_referral_code(self, code: str) -> ReferralCode:
        snapshot = self.store.get_document(REFERRAL_CODES_COLLECTION, code)
        if not snapshot.exists:
            raise NotFoundError(f"Referral code not found: {code}", {"referralCode": code})
        return ReferralCode.from_document(snapshot.id, snapshot.data)

    def find_code_for_owner(self, owner_id: str) -> Optional[ReferralCode]:
        snapshots = self.store.query_collection(
            REFERRAL_CODES_COLLECTION, [Filter("ownerId", "==", owner_id)]
        )
        if not snapshots:
            return None
        return ReferralCode.from_document(snapshots[0].id, snapshots[0].data)
