import argparse
import json
import logging

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwcrypto import jwk

logger = logging.getLogger(__name__)


def gen_key(key_size: int = 2048) -> str:
    """A new RSA private key as unencrypted PKCS#8 PEM."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def gen_jwk(pem_path: str, key_id: str, algorithm: str = "RS256") -> str:
    """The public JWK for the private key in ``pem_path``."""
    with open(pem_path, "rb") as fd:
        key = jwk.JWK.from_pem(fd.read())
    public = json.loads(key.export_public())
    public.update({"kid": key_id, "alg": algorithm, "use": "sig"})
    return json.dumps(public, indent=2)


def main() -> None:
    parser = argparse.ArgumentParser(prog="tep-util", description="TEP broker utilities")

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_key_parser = subparsers.add_parser("gen-key", help="Generate an RSA signing key")
    gen_key_parser.add_argument("--key-size", type=int, default=2048)

    gen_jwk_parser = subparsers.add_parser(
        "gen-jwk", help="Print the public JWK of a PEM private key"
    )
    gen_jwk_parser.add_argument("pem", help="Path of the PEM private key.")
    gen_jwk_parser.add_argument("--kid", default="tep-2024-01", help="Key identifier.")
    gen_jwk_parser.add_argument("--alg", default="RS256", help="Signing algorithm.")

    args = parser.parse_args()

    if args.command == "gen-key":
        print(gen_key(args.key_size), end="")
    elif args.command == "gen-jwk":
        print(gen_jwk(args.pem, args.kid, args.alg))


if __name__ == "__main__":
    main()
