import json, sys
from certverify.config import AUTH_SECRET, AUTH_TOKEN_TTL_SECONDS
from certverify.security import generate_auth_token, verify_auth_token

def main(user_id: str, ttl_seconds: int = AUTH_TOKEN_TTL_SECONDS):
    if not AUTH_SECRET:
        print("AUTH_SECRET is not set"); raise SystemExit(1)
    token = generate_auth_token(user_id, AUTH_SECRET, ttl_seconds=ttl_seconds)
    claims = verify_auth_token(token, AUTH_SECRET)
    print(json.dumps({"token": token, "sub": claims.sub, "expires_at": claims.exp}, indent=2))

if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("Usage: python tools/make_auth_token.py <user_id> [ttl_seconds]"); raise SystemExit(2)
    main(sys.argv[1], int(sys.argv[2]) if len(sys.argv) == 3 else AUTH_TOKEN_TTL_SECONDS)
