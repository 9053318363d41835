#!/usr/bin/env python
from dotenv import load_dotenv
import os

# Load .env file
load_dotenv()

# Check environment variables
print("Environment Variables Status:")
print("=" * 40)

claude_key = os.getenv('CLAUDE_API_KEY')
if claude_key and claude_key != 'your_claude_api_key_here':
    print("✓ CLAUDE_API_KEY: SET")
else:
    print("✗ CLAUDE_API_KEY: NOT SET")

telegram_token = os.getenv('TELEGRAM_TOKEN')
if telegram_token and telegram_token != 'your_telegram_bot_token_here':
    print("✓ TELEGRAM_TOKEN: SET")
else:
    print("✗ TELEGRAM_TOKEN: NOT SET (notifications disabled)")

pending_chat = os.getenv('PENDING_CHAT_ID')
if pending_chat:
    print(f"✓ PENDING_CHAT_ID: {pending_chat}")
else:
    print("✗ PENDING_CHAT_ID: NOT SET (optional)")

recipient = os.getenv('EXPECTED_RECIPIENT_ACCOUNT')
if recipient:
    print(f"✓ EXPECTED_RECIPIENT_ACCOUNT: {recipient}")
else:
    print("✗ EXPECTED_RECIPIENT_ACCOUNT: NOT SET (recipient check disabled)")

print(f"\nUSD_TO_KHR_RATE: {os.getenv('USD_TO_KHR_RATE', '4000')}")
print(f"PAYMENT_TOLERANCE_PERCENT: {os.getenv('PAYMENT_TOLERANCE_PERCENT', '5')}")
print(f"MAX_SCREENSHOT_AGE_DAYS: {os.getenv('MAX_SCREENSHOT_AGE_DAYS', '7')}")
print(f"OCR_RATE_LIMIT_PER_MINUTE: {os.getenv('OCR_RATE_LIMIT_PER_MINUTE', '10')}")
print(f"OCR_TIMEOUT_MS: {os.getenv('OCR_TIMEOUT_MS', '60000')}")
print(f"PENDING_WARNING_DAYS: {os.getenv('PENDING_WARNING_DAYS', '5')}")
print(f"PAYMENT_STATE_DB: {os.getenv('PAYMENT_STATE_DB', 'payment_state.db')}")
