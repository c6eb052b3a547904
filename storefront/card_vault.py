"""AES-256-CBC encryption for stored card numbers."""

import os
from typing import Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_BYTES = 32
IV_BYTES = 16


class CardVaultError(ValueError):
    pass


def load_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex or "")
    except ValueError as exc:
        raise CardVaultError("ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != KEY_BYTES:
        raise CardVaultError("ENCRYPTION_KEY must be 32 bytes (64 hex characters)")
    return key


def encrypt_card_number(card_number: str, key_hex: str) -> Tuple[str, str]:
    key = load_key(key_hex)
    iv = os.urandom(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(card_number.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()
    return encrypted.hex(), iv.hex()


def decrypt_card_number(encrypted_hex: str, iv_hex: str, key_hex: str) -> str:
    key = load_key(key_hex)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(bytes.fromhex(iv_hex))).decryptor()
    padded = decryptor.update(bytes.fromhex(encrypted_hex)) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")


def luhn_valid(card_number: str) -> bool:
    digits = [int(char) for char in card_number if char.isdigit()]
    if not digits:
        return False
    checksum = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0
