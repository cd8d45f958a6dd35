import sys
import os

# Add the project root to the Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, project_root)

from app.core.database import db


def create_test_user():
    """Creates the load-test player used by locustfile.py."""
    username = "testuser"
    password = "password"

    # db.create_user already checks for existing users
    result = db.create_user(username, password)

    if result.get("success"):
        print(f"Successfully created user '{username}' with {result['credits']} credits.")
    elif result.get("error") == "Username already taken":
        print(f"User '{username}' already exists.")
    else:
        print(f"Failed to create user: {result.get('error')}")


if __name__ == "__main__":
    create_test_user()
