#!/usr/bin/env python3
"""
NumberSweep Backend API Smoke Test
Runs the upload -> match -> deactivate flow against a running server.

    NUMBERSWEEP_URL=http://localhost:8001 NUMBERSWEEP_STORE=store-1 python backend_test.py

The batch step deactivates real customers, so it only runs with NUMBERSWEEP_DEACTIVATE=1.
"""
import requests
import os
import sys
import time
from datetime import datetime

class NumberSweepAPITester:
    def __init__(self, base_url="http://localhost:8001", store_id="store-1", deactivate=False):
        self.base_url = base_url.rstrip('/')
        self.store_id = store_id
        self.deactivate = deactivate
        self.session_id = None
        self.tests_run = 0
        self.tests_passed = 0
        self.test_results = []

    def log_test(self, name, success, details=""):
        self.tests_run += 1
        if success:
            self.tests_passed += 1

        self.test_results.append({
            "test": name,
            "success": success,
            "details": details,
            "timestamp": datetime.now().isoformat()
        })

        status = "PASS" if success else "FAIL"
        print(f"{status} - {name}")
        if details:
            print(f"    {details}")
        return success

    def run_test(self, name, method, endpoint, data=None, files=None, params=None, timeout=30, expect_error=False):
        """One request. Endpoints answer 200 and report failures in an 'error' field."""
        url = f"{self.base_url}/api/{endpoint}"
        try:
            if method == 'GET':
                response = requests.get(url, params=params, timeout=timeout)
            elif method == 'POST':
                response = requests.post(url, json=data, files=files, params=params, timeout=timeout)
            else:
                return self.log_test(name, False, f"Unsupported method: {method}"), {}
        except requests.exceptions.Timeout:
            return self.log_test(name, False, f"Request timeout after {timeout}s"), {}
        except requests.exceptions.RequestException as e:
            return self.log_test(name, False, f"Request failed: {e}"), {}

        if response.status_code != 200:
            return self.log_test(name, False, f"Status: {response.status_code}. Body: {response.text[:200]}"), {}

        if 'application/json' not in response.headers.get('content-type', ''):
            return self.log_test(name, True, f"{len(response.content)} bytes"), {}

        body = response.json()
        has_error = isinstance(body, dict) and 'error' in body
        if has_error != expect_error:
            detail = body.get('error') if has_error else "expected an error response"
            return self.log_test(name, False, detail), body
        if isinstance(body, dict) and 'session_id' in body:
            self.session_id = body['session_id']
        return self.log_test(name, True, "Response OK"), body

    def test_health_check(self):
        print("\nTesting API Health...")
        success, _ = self.run_test("API Health Check", "GET", "")
        return success

    def test_roster(self):
        print("\nTesting Store Roster...")
        success, data = self.run_test("List Customers", "GET", f"stores/{self.store_id}/customers",
                                      params={'limit': 5})
        if not success:
            return False
        print(f"    {data.get('roster_total')} customers in store {self.store_id}")
        self.run_test("List Inactive Customers", "GET", f"stores/{self.store_id}/customers",
                      params={'status': 'inactive', 'limit': 5})
        self.run_test("Invalid Status Filter", "GET", f"stores/{self.store_id}/customers",
                      params={'status': 'deleted'}, expect_error=True)
        return True

    def test_session_creation(self):
        print("\nTesting Session Management...")
        self.run_test("Reject Session Without Store", "POST", "sessions", {"store_id": ""}, expect_error=True)
        success, _ = self.run_test("Create Session", "POST", "sessions", {"store_id": self.store_id})
        if success and self.session_id:
            self.run_test("Get Session Info", "GET", f"sessions/{self.session_id}")
            return True
        return False

    def test_upload(self):
        if not self.session_id:
            return False
        print("\nTesting Upload & Matching...")

        empty = {'file': ('empty.csv', b'phone\n', 'text/csv')}
        self.run_test("Reject Empty Upload", "POST", f"sessions/{self.session_id}/upload",
                      files=empty, expect_error=True)

        template = requests.get(f"{self.base_url}/api/templates/upload", timeout=30).content
        files = {'file': ('numbers.csv', template, 'text/csv')}
        success, data = self.run_test("Upload Numbers", "POST", f"sessions/{self.session_id}/upload", files=files)
        if success:
            print(f"    Summary: {data.get('summary')}")
        return success

    def test_deactivation(self):
        if not self.session_id:
            return False
        if not self.deactivate:
            print("\nSkipping batch deactivation (set NUMBERSWEEP_DEACTIVATE=1 to run it)")
            return True
        print("\nTesting Batch Deactivation...")

        success, data = self.run_test("Start Deactivation", "POST", f"sessions/{self.session_id}/deactivate")
        if not success:
            return data.get('error') == "No customers to deactivate."

        max_polls = 60
        for i in range(max_polls):
            time.sleep(1)
            success, data = self.run_test(f"Check Status (poll {i+1})", "GET", f"sessions/{self.session_id}/status")
            if success and data.get('status') in ('completed', 'partially_failed'):
                print(f"    {data['report']['message']} after {i+1} polls")
                return True
            if success and data.get('status') == 'failed':
                return self.log_test("Batch Deactivation", False, data.get('error') or 'Unknown error')

        return self.log_test("Batch Deactivation", False, "Batch did not finish within timeout")

    def test_export_endpoints(self):
        if not self.session_id or not self.deactivate:
            return True
        print("\nTesting Export Endpoints...")
        self.run_test("Export Results CSV", "GET", f"sessions/{self.session_id}/export/results")
        self.run_test("Export PDF Report", "GET", f"sessions/{self.session_id}/export/report")
        return True

    def test_downloads(self):
        print("\nTesting Downloads...")
        self.run_test("Download Upload Template", "GET", "templates/upload")
        self.run_test("Download Synthetic Upload", "GET", "synthetic/download", params={'size': 20})
        return True

    def run_comprehensive_test_suite(self):
        print("Starting NumberSweep API Smoke Test")
        print(f"Testing against: {self.base_url} (store {self.store_id})")
        print("=" * 60)

        # Order matters: later sections reuse the session
        test_sequence = [
            ("API Health Check", self.test_health_check),
            ("Store Roster", self.test_roster),
            ("Session Creation", self.test_session_creation),
            ("Upload & Matching", self.test_upload),
            ("Batch Deactivation", self.test_deactivation),
            ("Export Functions", self.test_export_endpoints),
            ("Downloads", self.test_downloads),
        ]

        failed_sections = []
        for section_name, test_func in test_sequence:
            if not test_func():
                failed_sections.append(section_name)
                if section_name in ["API Health Check", "Session Creation"]:
                    print(f"\nCritical failure in {section_name}. Stopping.")
                    break

        print("\n" + "=" * 60)
        print("TEST SUMMARY")
        print("=" * 60)
        print(f"Total Tests: {self.tests_run}")
        print(f"Passed: {self.tests_passed}")
        print(f"Failed: {self.tests_run - self.tests_passed}")
        print(f"Success Rate: {(self.tests_passed/max(self.tests_run,1)*100):.1f}%")

        if failed_sections:
            print(f"\nFailed Sections: {', '.join(failed_sections)}")
        else:
            print("\nAll sections completed successfully!")
        return not failed_sections

def main():
    tester = NumberSweepAPITester(
        base_url=os.environ.get('NUMBERSWEEP_URL', 'http://localhost:8001'),
        store_id=os.environ.get('NUMBERSWEEP_STORE', 'store-1'),
        deactivate=os.environ.get('NUMBERSWEEP_DEACTIVATE') == '1',
    )
    success = tester.run_comprehensive_test_suite()
    return 0 if success else 1

if __name__ == "__main__":
    sys.exit(main())
