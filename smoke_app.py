#!/usr/bin/env python3
"""
Manual smoke script for a running Medicare Intake Router (python app.py).
"""

import requests
import sys

SAMPLE_FORM = {
    "phoneNumber": "+15551234999",
    "name": "Smoke Test",
    "email": "smoke.test@example.com",
    "city": "Baltimore",
    "age": 68,
    "medicareNumber": "1EG4TE5MK73",
    "planLevel": "Advantage",
    "hasColorblindness": True,
    "colorblindType": "red-green",
    "currentEyewear": "glasses",
    "medicalHistory": ["hypertension"],
}

def check_health(base_url="http://localhost:8000"):
    """Test the health check endpoint."""
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
        if response.status_code == 200:
            print(f"✅ Health check passed: {response.json()}")
            return True
        print(f"❌ Health check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Health check error: {e}")
        return False

def check_submission(base_url="http://localhost:8000"):
    """Issue a token, submit the sample form, then try to reuse the token."""
    try:
        issued = requests.post(
            f"{base_url}/api/form-tokens", json={"phoneNumber": SAMPLE_FORM["phoneNumber"]}, timeout=10
        )
        if issued.status_code != 200:
            print(f"❌ Token issue failed: {issued.status_code} {issued.text}")
            return False
        token = issued.json()["token"]
        print(f"✅ Form URL: {issued.json()['formUrl']}")

        response = requests.post(
            f"{base_url}/api/form-submission", json={"token": token, "formData": SAMPLE_FORM}, timeout=30
        )
        if response.status_code != 200:
            print(f"❌ Submission failed: {response.status_code} {response.text}")
            return False
        classification = response.json()["classification"]
        print(f"✅ Submission passed: {classification['result']} ({classification['score']}/100)")

        replay = requests.post(
            f"{base_url}/api/form-submission", json={"token": token, "formData": SAMPLE_FORM}, timeout=30
        )
        if replay.status_code != 409:
            print(f"❌ Token replay was not rejected: {replay.status_code}")
            return False
        print(f"✅ Token replay rejected: {replay.json()['code']}")
        return True
    except requests.exceptions.RequestException as e:
        print(f"❌ Submission error: {e}")
        return False

def check_existing(base_url="http://localhost:8000"):
    try:
        response = requests.get(f"{base_url}/api/check-existing/{SAMPLE_FORM['phoneNumber']}", timeout=10)
        print(f"{'✅' if response.ok else '❌'} Check existing: {response.json()}")
        return response.ok and response.json()["found"]
    except requests.exceptions.RequestException as e:
        print(f"❌ Check existing error: {e}")
        return False

def main():
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    print(f"🧪 Smoke testing {base_url}")
    results = [check_health(base_url), check_submission(base_url), check_existing(base_url)]
    print(f"\n{sum(results)}/{len(results)} checks passed")
    return all(results)

if __name__ == "__main__":
    sys.exit(0 if main() else 1)
