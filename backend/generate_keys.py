import os
import secrets

# JWT signing secret and the dedicated CRM token encryption secret
jwt_secret = secrets.token_urlsafe(32)
crm_secret = secrets.token_urlsafe(48)

print(f"Generated JWT_SECRET: {jwt_secret}")
print(f"Generated CRM_TOKEN_ENCRYPTION_SECRET: {crm_secret}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        content = f.read()

    new_lines = []
    for line in content.splitlines():
        if line.startswith("JWT_SECRET="):
            new_lines.append(f"JWT_SECRET={jwt_secret}")
        elif line.startswith("CRM_TOKEN_ENCRYPTION_SECRET="):
            new_lines.append(f"CRM_TOKEN_ENCRYPTION_SECRET={crm_secret}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
