"""
main.py
======
Interactive demo of U2F registration and authentication against the
relying-party core.

This script orchestrates:
- FidoServer: issues challenges, finalizes responses, stores public keys
- SoftwareAuthenticator: the external signer (a software U2F token)

Demo options:
1. Register - issue a challenge, let the token sign it, enroll the key
2. Login - issue a challenge for the enrolled key handle, finalize the response
3. Tampered response - flip a byte in the registration data (MALFORMED_RESPONSE)
4. Replayed response - submit a login response twice (CHALLENGE_MISMATCH)
5. Cancelled ceremony - the user dismisses the token prompt (SIGNER_FAILURE)
6. Show stored data - debug dump of the registry
"""

import json
import logging
import os

from authenticator import SoftwareAuthenticator
from config import load_config
from crypto_utils import base64url_decode, base64url_encode
from errors import ErrorKind, Result
from messages import RegisterResponse
from server import FidoServer

MESSAGES = {
    ErrorKind.UNKNOWN_IDENTITY: "Username not found. Please register first (option 1).",
    ErrorKind.MALFORMED_RESPONSE: "The security key's answer could not be read.",
    ErrorKind.SIGNER_FAILURE: "The security key did not complete the operation.",
    ErrorKind.CHALLENGE_MISMATCH: "The answer does not belong to this login attempt.",
}


def report(label: str, result: Result) -> None:
    if result.ok:
        print(f"[Server] {label}: OK")
    else:
        print(f"[Server] {label}: FAIL ({result.error.value}: {result.detail})")
        print(f"         {MESSAGES[result.error]}")


def main() -> None:
    """
    Main entry point: run interactive demo loop.

    Step-by-step flow:
    1. Load configuration once and build the server context from it
    2. Create the software token standing in for the hardware key
    3. Present the menu until the user exits
    """
    logging.basicConfig(
        level=os.environ.get("FIDO_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    server = FidoServer(config)
    token = SoftwareAuthenticator()

    print(f"appId={config.app_id} facetId={config.facet_id}")

    while True:
        print("\n=== U2F DEMO ===")
        print("1) Register")
        print("2) Login")
        print("3) Tampered registration response")
        print("4) Replayed login response")
        print("5) Cancelled ceremony")
        print("6) Show stored data")
        print("0) Exit")

        choice = input("Choose: ").strip()

        if choice == "0":
            break

        # ---------------------------------------------------------------------
        # Option 1: Register
        # ---------------------------------------------------------------------
        if choice == "1":
            username = input("Username: ").strip()
            request = server.register_request(username)
            print(f"[Server] Issued challenge: {request.challenge}")

            response = token.register(request)
            print("[Token] Created key pair and signed registration data.")

            report("Finish registration", server.register_finish(username, response))

        # ---------------------------------------------------------------------
        # Option 2: Login
        # ---------------------------------------------------------------------
        elif choice == "2":
            username = input("Username: ").strip()
            request = server.authenticate_request(username)
            if not request.ok:
                report("Start login", request)
                continue
            print(f"[Server] Issued challenge: {request.value.challenge}")

            assertion = token.authenticate(request.value)
            print(f"[Token] Signed challenge (counter={token.sign_counter}).")

            report("Finish login", server.authenticate_finish(username, assertion))

        # ---------------------------------------------------------------------
        # Option 3: Tampered registration response
        # ---------------------------------------------------------------------
        elif choice == "3":
            username = input("Username: ").strip()
            request = server.register_request(username)
            response = token.register(request)

            raw = bytearray(base64url_decode(response.registration_data))
            raw[0] ^= 0xFF
            tampered = RegisterResponse(
                client_data=response.client_data,
                registration_data=base64url_encode(bytes(raw)),
            )
            print("[Attacker] Flipped the reserved byte of the registration data.")

            report("Finish registration", server.register_finish(username, tampered))

        # ---------------------------------------------------------------------
        # Option 4: Replayed login response
        # ---------------------------------------------------------------------
        elif choice == "4":
            username = input("Username: ").strip()
            request = server.authenticate_request(username)
            if not request.ok:
                report("Start login", request)
                continue

            assertion = token.authenticate(request.value)
            report("First submission", server.authenticate_finish(username, assertion))
            print("[Attacker] Submitting the same response again.")
            report("Replayed submission", server.authenticate_finish(username, assertion))

        # ---------------------------------------------------------------------
        # Option 5: Cancelled ceremony
        # ---------------------------------------------------------------------
        elif choice == "5":
            username = input("Username: ").strip()
            token.cancel_next = True
            report("Login ceremony", server.authenticate(username, token, timeout=30.0))
            token.cancel_next = False

        # ---------------------------------------------------------------------
        # Option 6: Debug dump of stored data
        # ---------------------------------------------------------------------
        elif choice == "6":
            print("\n--- SERVER REGISTRY ---")
            print(json.dumps(server.debug_dump(), indent=2))

        else:
            print("Invalid option.")


if __name__ == "__main__":
    main()
