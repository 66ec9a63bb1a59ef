"""Browser macro that creates synthetic test accounts on the ordering site.

One Chromium instance is launched per job and every account gets its own
page. A failing account is recorded (with a screenshot) and the loop moves
on to the next one; only a failure to launch the browser fails the job.
"""
import os
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from playwright.sync_api import Browser, Page, sync_playwright
from playwright.sync_api import Error as PlaywrightError

from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger

logger = setup_logger()

# Every site-specific selector lives here
SELECTORS = {
    "password": 'input[type="password"]',
    "submit_button": "Submit",
    "close_button": 'button[aria-label="Close"]',
    "env_screen": 'div[tabindex="0"]',
    "env_continue": "Continue",
    "sign_in_button": 'button[aria-label="Sign Up or Sign In"]',
    "continue_with_email": "Continue with Email",
    "email": 'input[type="email"]',
    "signin_submit": 'button[data-testid="signin-button"]',
    "name": 'input[data-testid="signup-name-input"]',
    "agree_terms": 'div[data-testid="signup-agreeToTermsOfService"]',
    "create_account": "Create an Account",
}

ONETRUST_REMOVAL_JS = """() => {
  const ot = document.getElementById('onetrust-consent-sdk');
  if (ot) ot.remove();
}"""

OVERLAY_REMOVAL_JS = """() => {
  const ot = document.getElementById('onetrust-consent-sdk');
  if (ot) ot.remove();

  document.querySelectorAll('div[tabindex="0"]').forEach(el => {
    const r = el.getBoundingClientRect();
    const pos = getComputedStyle(el).position;
    const coversScreen =
      r.width >= window.innerWidth * 0.8 &&
      r.height >= window.innerHeight * 0.8 &&
      (pos === 'fixed' || pos === 'absolute');
    if (coversScreen) el.remove();
  });

  document.querySelectorAll('[role="dialog"], .ReactModal__Overlay, .modal, .overlay').forEach(el => {
    const r = el.getBoundingClientRect();
    if (r.width * r.height > 100000) el.remove();
  });
}"""


class SignupBatchError(RuntimeError):
    """The browser failed mid-batch; carries the accounts handled before it did."""

    def __init__(self, message: str, successes: List[str], failures: List[Dict[str, Any]]):
        self.successes = successes
        self.failures = failures
        super().__init__(
            f"Signup batch aborted: {message} "
            f"(created {len(successes)}: {successes}; failed {len(failures)})"
        )


@dataclass
class SignupOptions:
    base_url: str
    env: str
    region: str
    site_password: Optional[str]
    email_prefix: str
    email_domain: str
    account_name: str
    headless: bool = True
    page_timeout_ms: int = 45000
    screenshot_dir: str = "screenshots"

    @classmethod
    def from_settings(cls, settings_obj, env: Optional[str] = None, region: Optional[str] = None) -> "SignupOptions":
        env = env or settings_obj.signup_default_env
        region = region or settings_obj.signup_default_region
        return cls(
            base_url=settings_obj.signup_url_template.format(env=env, region=region),
            env=env,
            region=region,
            site_password=settings_obj.signup_site_password,
            email_prefix=settings_obj.signup_email_prefix,
            email_domain=settings_obj.signup_email_domain,
            account_name=settings_obj.signup_account_name,
            headless=settings_obj.signup_headless,
            page_timeout_ms=settings_obj.SIGNUP_PAGE_TIMEOUT_MS,
            screenshot_dir=settings_obj.signup_screenshot_dir,
        )


def generate_email(prefix: str, domain: str, rng: Optional[random.Random] = None) -> str:
    rand = (rng or random).randrange(100_000_000)
    return f"{prefix}{rand}@{domain}"


class SignupAgent:
    """Drives one browser serially through the signup flow, one page per account."""

    def __init__(self, options: SignupOptions, rng: Optional[random.Random] = None):
        self.options = options
        self.rng = rng or random.Random()
        self._step = 0

    def run(self, browser: Browser, count: int, result: Optional[Dict[str, List[Any]]] = None) -> Dict[str, List[Any]]:
        """Create `count` accounts, appending to `result` as each one finishes.

        Pass `result` in to keep the accounts already handled when the
        browser itself fails mid-batch.
        """
        if result is None:
            result = {"successes": [], "failures": []}
        successes = result.setdefault("successes", [])
        failures = result.setdefault("failures", [])

        for index in range(1, max(count or 1, 1) + 1):
            page = browser.new_page()
            try:
                page.set_default_timeout(self.options.page_timeout_ms)
                page.set_default_navigation_timeout(self.options.page_timeout_ms)
                logger.info(f"WORKER: --- Creating Account #{index} ---")
                email = self.create_account(page)
                successes.append(email)
                logger.info(f"WORKER: [SUCCESS] Account created: {email}")
            except Exception as e:
                # Any error on one account is recorded; the batch continues
                message = f"Failed on account #{index}: {e}"
                logger.error(f"WORKER: [FAILURE] {message}")
                failures.append({"accountIndex": index, "error": message})
                self._screenshot(page, index)
            finally:
                if not page.is_closed():
                    page.close()

        return result

    def _screenshot(self, page: Page, index: int) -> None:
        try:
            if not page.is_closed():
                os.makedirs(self.options.screenshot_dir, exist_ok=True)
                path = os.path.join(self.options.screenshot_dir, f"ERROR-Account-{index}.png")
                page.screenshot(path=path)
                logger.info(f"WORKER: Saved failure screenshot {path}")
        except (PlaywrightError, OSError) as e:
            logger.error(f"WORKER: Screenshot error (after failure): {e}")

    def _log_step(self, message: str) -> None:
        self._step += 1
        logger.info(f"WORKER: [Step {self._step}] {message}")

    def create_account(self, page: Page) -> str:
        """Run the full signup macro on a fresh page and return the new email."""
        self._step = 0
        opts = self.options

        self._log_step(f"Opening URL {opts.base_url}")
        page.goto(opts.base_url, wait_until="load")

        if opts.site_password:
            self._log_step("Entering site password")
            page.fill(SELECTORS["password"], opts.site_password)
            self._log_step("Clicking Submit")
            page.get_by_role("button", name=SELECTORS["submit_button"]).click()
            page.wait_for_timeout(2000)

        self.dismiss_cookie_popup(page, timeout=4000)

        if self._is_visible(page.locator(SELECTORS["env_screen"], has_text=SELECTORS["env_continue"]).first):
            self._log_step("Clicking Continue on env screen")
            page.get_by_text(SELECTORS["env_continue"]).first.click()
            page.wait_for_timeout(1000)
        else:
            logger.info("WORKER: No environment continue screen")

        self.dismiss_cookie_popup(page, timeout=2000)

        self._log_step("Clicking Profile Icon")
        self.open_sign_in(page)

        continue_email = page.get_by_role("button", name=SELECTORS["continue_with_email"])
        if not self._is_visible(continue_email):
            # The first click is sometimes swallowed by a late overlay
            self.dismiss_cookie_popup(page, timeout=2000)
            self._log_step("Re-opening sign in dialog")
            self.open_sign_in(page)

        self._log_step("Clicking Continue with Email")
        continue_email.click()
        page.wait_for_timeout(1000)

        email = generate_email(opts.email_prefix, opts.email_domain, self.rng)
        self._log_step(f"Entering email: {email}")
        page.fill(SELECTORS["email"], email)

        self._log_step("Clicking Sign Up / Sign In")
        page.click(SELECTORS["signin_submit"])
        page.wait_for_timeout(1500)

        self._log_step("Filling name")
        page.fill(SELECTORS["name"], opts.account_name)

        self._log_step("Checking Agree To Terms")
        page.click(SELECTORS["agree_terms"])
        page.wait_for_timeout(500)

        self._log_step("Clicking Create an Account")
        page.get_by_role("button", name=SELECTORS["create_account"]).click()
        page.wait_for_timeout(2000)

        return email

    def open_sign_in(self, page: Page) -> None:
        clear_blocking_overlays(page)
        button = page.locator(SELECTORS["sign_in_button"])
        button.wait_for(state="visible", timeout=20000)
        try:
            button.click(timeout=10000)
        except PlaywrightError as e:
            logger.warning(f"WORKER: Click intercepted. Forcing click... {e}")
            button.click(force=True, timeout=5000)
        page.wait_for_timeout(1000)

    def dismiss_cookie_popup(self, page: Page, timeout: int) -> None:
        self._log_step("Checking for cookie popup")
        try:
            page.wait_for_selector(SELECTORS["close_button"], timeout=timeout)
            page.click(SELECTORS["close_button"])
            page.wait_for_timeout(800)
        except PlaywrightError:
            logger.info("WORKER: No cookie popup present or already closed.")
        page.evaluate(ONETRUST_REMOVAL_JS)

    @staticmethod
    def _is_visible(locator) -> bool:
        try:
            return bool(locator.is_visible())
        except PlaywrightError:
            return False


def clear_blocking_overlays(page: Page) -> None:
    """Remove cookie banners and full-screen interceptors, then close any modal."""
    try:
        page.evaluate(OVERLAY_REMOVAL_JS)
        close_btn = page.locator(SELECTORS["close_button"])
        if close_btn.is_visible():
            close_btn.click(timeout=1000)
            page.wait_for_timeout(300)
    except PlaywrightError as e:
        logger.debug(f"WORKER: Overlay cleanup skipped: {e}")


def create_signup_accounts(count: int, env: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
    """Launch Chromium once and create `count` accounts against env/region."""
    options = SignupOptions.from_settings(settings, env, region)
    logger.info(f"WORKER: Starting signup process for {count} accounts on {options.base_url}...")
    result: Dict[str, List[Any]] = {"successes": [], "failures": []}

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=options.headless)
        try:
            SignupAgent(options).run(browser, count, result)
        except Exception as e:
            raise SignupBatchError(str(e), result["successes"], result["failures"]) from e
        finally:
            browser.close()
            logger.info("WORKER: Browser closed. Job finished.")
            logger.info(f"WORKER: Successful Accounts: {result['successes']}")
            logger.info(f"WORKER: Failed Accounts: {result['failures']}")

    return {
        "requested": max(count or 1, 1),
        "env": options.env,
        "region": options.region,
        "successes": result["successes"],
        "failures": result["failures"],
    }
