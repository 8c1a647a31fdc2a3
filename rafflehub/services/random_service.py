import asyncio
import base64
import json
import random
from typing import Dict, Any, Optional, Tuple
from urllib.parse import quote

import requests
from loguru import logger

from rafflehub.config import settings


class RandomOrgError(Exception):
    """Random.org API error"""
    pass


class LocalRandomSource:
    """
    In-process pseudo random numbers

    Not cryptographically strong: the raffle creator runs the draw and is
    trusted, so only uniformity matters.
    """

    name = "local"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def pick_index(self, size: int) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Uniform index in [0, size) and no proof"""
        if size <= 0:
            raise ValueError("Cannot pick from an empty range")
        return self.rng.randrange(size), None


class RandomOrgService:
    """Service for Random.org Signed API integration"""

    name = "random.org"

    API_URL = "https://api.random.org/json-rpc/4/invoke"

    def __init__(self, api_key: Optional[str] = None, timeout: float = 10):
        self.api_key = api_key or settings.RANDOM_ORG_API_KEY
        self.timeout = timeout

    async def pick_index(self, size: int) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Uniform index in [0, size) together with the signed proof"""
        if size <= 0:
            raise ValueError("Cannot pick from an empty range")

        signed = await asyncio.to_thread(self.get_signed_random, 0, size - 1)
        proof = {
            "source": self.name,
            "random_number": signed["random_number"],
            "signature": signed["signature"],
            "serial_number": signed["serial_number"],
            "verification_url": self.get_verification_url(signed["full_response"]),
        }
        return signed["random_number"], proof

    def get_signed_random(self, min_val: int, max_val: int) -> Dict[str, Any]:
        """
        Get signed random integer from Random.org

        Args:
            min_val: Minimum value (inclusive)
            max_val: Maximum value (inclusive)

        Returns:
            Dictionary containing:
            - random_number: The random number
            - signature: Cryptographic signature
            - serial_number: Serial number for verification
            - full_response: Complete API response

        Raises:
            RandomOrgError: If API call fails
        """
        payload = {
            "jsonrpc": "2.0",
            "method": "generateSignedIntegers",
            "params": {
                "apiKey": self.api_key,
                "n": 1,
                "min": min_val,
                "max": max_val,
                "replacement": True,
            },
            "id": 1
        }

        try:
            logger.info(f"Requesting random number from Random.org (range: {min_val}-{max_val})")
            response = requests.post(
                self.API_URL,
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.error(f"Random.org request failed: {e}")
            raise RandomOrgError(f"Failed to connect to Random.org: {e}") from e

        if "error" in data:
            error_msg = data["error"].get("message", "Unknown error")
            logger.error(f"Random.org API error: {error_msg}")
            raise RandomOrgError(f"Random.org API error: {error_msg}")

        result = data.get("result", {})
        random_data = result.get("random", {})
        random_number = random_data.get("data", [None])[0]

        if random_number is None:
            raise RandomOrgError("No random number in response")

        serial_number = random_data.get("serialNumber")

        logger.info(f"Received random number: {random_number}")
        logger.debug(f"Serial number: {serial_number}")

        return {
            "random_number": random_number,
            "signature": result.get("signature"),
            "serial_number": serial_number,
            "full_response": result,
        }

    def get_verification_url(self, full_response: Dict[str, Any]) -> str:
        """
        Get URL for public verification of the random number

        Args:
            full_response: Full response from Random.org containing random object and signature

        Returns:
            URL for verification page with encoded random data and signature
        """
        random_object = full_response.get("random", {})
        signature = full_response.get("signature") or ""

        random_json = json.dumps(random_object, separators=(',', ':'))
        random_base64 = base64.b64encode(random_json.encode('utf-8')).decode('utf-8')

        return (
            f"https://api.random.org/signatures/form"
            f"?format=json"
            f"&random={random_base64}"
            f"&signature={quote(signature, safe='')}"
        )


def build_random_source():
    """Random.org when an API key is configured, local PRNG otherwise"""
    if settings.RANDOM_ORG_API_KEY:
        return RandomOrgService()
    return LocalRandomSource()
