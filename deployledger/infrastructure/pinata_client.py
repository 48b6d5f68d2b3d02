import aiohttp
import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from deployledger.domain.change_detector import canonical_json
from deployledger.domain.exceptions import NotFoundException, StorageUnavailableException

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.pinata.cloud"
DEFAULT_GATEWAY_URL = "https://gateway.pinata.cloud"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30, connect=10)
AUTH_TIMEOUT = aiohttp.ClientTimeout(total=10)
MAX_RETRIES = 3
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
# Gateway answers meaning the hash itself is unknown or malformed
UNKNOWN_HASH_STATUSES = {400, 404, 422}


class PinataPayloadStore:
    """
    Content-addressed payload storage on IPFS through the Pinata pinning API.
    Payloads are uploaded as canonical JSON so equal objects always get the same CID.
    """

    def __init__(
        self,
        api_key: str,
        secret_api_key: str,
        api_url: str = DEFAULT_API_URL,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.headers = {
            "pinata_api_key": api_key,
            "pinata_secret_api_key": secret_api_key,
            "User-Agent": "deployledger",
        }
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    @staticmethod
    def _backoff(attempt: int) -> float:
        return (2 ** attempt) + random.uniform(0, 1)

    @staticmethod
    def _build_form(payload: Dict[str, Any]) -> aiohttp.FormData:
        form = aiohttp.FormData()
        form.add_field(
            "file",
            canonical_json(payload).encode("utf-8"),
            filename="contract.json",
            content_type="application/json",
        )
        form.add_field("pinataMetadata", json.dumps({
            "name": "contract-code.json",
            "keyvalues": {
                "type": "smart-contract",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }))
        form.add_field("pinataOptions", json.dumps({"cidVersion": 0}))
        return form

    async def store(self, payload: Dict[str, Any]) -> str:
        """
        Uploads a payload and returns its IPFS content hash (CID).

        Raises:
            StorageUnavailableException: Pinata kept failing or returned no hash.
        """
        session = self._get_session()

        for attempt in range(MAX_RETRIES):
            try:
                async with session.post(
                    f"{self.api_url}/pinning/pinFileToIPFS",
                    data=self._build_form(payload),
                    headers=self.headers,
                    timeout=REQUEST_TIMEOUT,
                ) as response:
                    if response.status in RETRYABLE_STATUSES:
                        sleep_time = self._backoff(attempt)
                        logger.warning(
                            f"Pinata upload failed ({response.status}), "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    response.raise_for_status()
                    data = await response.json()

                    content_hash = data.get("IpfsHash") if isinstance(data, dict) else None
                    if not content_hash:
                        raise StorageUnavailableException("Invalid response from Pinata: missing IpfsHash.")

                    logger.info(f"Payload uploaded to IPFS: {content_hash}")
                    return content_hash

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = self._backoff(attempt)
                logger.warning(
                    f"Pinata upload request failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise StorageUnavailableException(f"Failed to upload payload to IPFS after {MAX_RETRIES} attempts.")

    async def fetch(self, content_hash: str) -> Dict[str, Any]:
        """
        Retrieves a payload from the Pinata gateway.

        Raises:
            NotFoundException: The gateway does not know the hash, rejects it as malformed,
                or the content under it is not a JSON object.
            StorageUnavailableException: The gateway kept failing or refused the request.
        """
        session = self._get_session()

        for attempt in range(MAX_RETRIES):
            try:
                async with session.get(
                    f"{self.gateway_url}/ipfs/{content_hash}",
                    headers={"Accept": "application/json"},
                    timeout=REQUEST_TIMEOUT,
                ) as response:
                    if response.status in UNKNOWN_HASH_STATUSES:
                        raise NotFoundException(f"Payload {content_hash} not found on IPFS.")

                    if response.status in RETRYABLE_STATUSES:
                        sleep_time = self._backoff(attempt)
                        logger.warning(
                            f"IPFS gateway error ({response.status}) for {content_hash}, "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    response.raise_for_status()
                    try:
                        # Gateways do not always label JSON content correctly
                        payload = await response.json(content_type=None)
                    except ValueError as e:
                        raise NotFoundException(f"Content {content_hash} is not a JSON payload.") from e
                    if not isinstance(payload, dict):
                        raise NotFoundException(f"Content {content_hash} is not a JSON object payload.")
                    return payload

            except aiohttp.ClientResponseError as e:
                logger.error(f"IPFS gateway refused {content_hash} ({e.status}): {e.message}")
                raise StorageUnavailableException(f"IPFS gateway refused the request ({e.status}).") from e

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = self._backoff(attempt)
                logger.warning(
                    f"IPFS retrieval of {content_hash} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise StorageUnavailableException(f"Failed to retrieve {content_hash} from IPFS after {MAX_RETRIES} attempts.")

    async def pin(self, content_hash: str) -> bool:
        """Pins content by hash. Best-effort: failures are logged and reported as False."""
        session = self._get_session()
        body = {
            "hashToPin": content_hash,
            "pinataMetadata": {
                "name": "pinned-contract",
                "keyvalues": {
                    "type": "smart-contract",
                    "pinnedAt": datetime.now(timezone.utc).isoformat(),
                },
            },
        }
        try:
            async with session.post(
                f"{self.api_url}/pinning/pinByHash",
                json=body,
                headers=self.headers,
                timeout=REQUEST_TIMEOUT,
            ) as response:
                response.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Pinata pinning of {content_hash} failed: {e}")
            return False

        logger.info(f"Content pinned: {content_hash}")
        return True

    async def test_authentication(self) -> bool:
        """Checks the configured credentials against Pinata."""
        session = self._get_session()
        try:
            async with session.get(
                f"{self.api_url}/data/testAuthentication",
                headers=self.headers,
                timeout=AUTH_TIMEOUT,
            ) as response:
                response.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Pinata authentication failed: {e}")
            return False

        logger.info("Pinata authentication successful.")
        return True
