import sys
import os
import random
from types import SimpleNamespace
from unittest.mock import MagicMock
import pytest
from loguru import logger
from playwright.sync_api import Error as PlaywrightError
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from backend.app.services import signup_flow
from backend.app.services.signup_flow import (
    SELECTORS, SignupAgent, SignupBatchError, SignupOptions, generate_email,
)


def _options(tmp_path, **overrides):
    values = dict(
        base_url='https://qa-bk-ca-web.com.rbi.tools/',
        env='qa', region='ca',
        site_password=None,
        email_prefix='aiqatest', email_domain='yopmail.com',
        account_name='RBI DO NOT MAKE',
        page_timeout_ms=1000,
        screenshot_dir=str(tmp_path / 'shots'),
    )
    values.update(overrides)
    return SignupOptions(**values)


def _browser(pages):
    browser = MagicMock()
    browser.new_page.side_effect = pages
    return browser


def _page():
    page = MagicMock()
    page.is_closed.return_value = False
    return page


def _route_sign_in(page, sign_in):
    other = MagicMock()
    other.is_visible.return_value = False
    page.locator.side_effect = lambda selector, **kwargs: sign_in if selector == SELECTORS['sign_in_button'] else other


def _playwright_context(browser):
    playwright = MagicMock()
    playwright.chromium.launch.return_value = browser
    context = MagicMock()
    context.__enter__.return_value = playwright
    context.__exit__.return_value = False
    return context


def test_options_from_settings():
    fake = SimpleNamespace(
        signup_default_env='main', signup_default_region='us',
        signup_url_template='https://{env}-bk-{region}-web.com.rbi.tools/',
        signup_site_password='secret', signup_email_prefix='p', signup_email_domain='d.com',
        signup_account_name='Name', signup_headless=True, SIGNUP_PAGE_TIMEOUT_MS=45000,
        signup_screenshot_dir='/tmp/shots',
    )
    opts = SignupOptions.from_settings(fake, env='qa')
    assert opts.base_url == 'https://qa-bk-us-web.com.rbi.tools/'
    assert (opts.env, opts.region) == ('qa', 'us')
    assert opts.site_password == 'secret'


def test_generate_email_uses_prefix_and_domain():
    email = generate_email('aiqatest', 'yopmail.com', random.Random(7))
    assert email.startswith('aiqatest')
    assert email.endswith('@yopmail.com')
    assert int(email[len('aiqatest'):-len('@yopmail.com')]) < 100_000_000
    assert email == generate_email('aiqatest', 'yopmail.com', random.Random(7))


def test_create_account_fills_signup_form(tmp_path):
    page = _page()
    agent = SignupAgent(_options(tmp_path), rng=random.Random(1))

    email = agent.create_account(page)

    page.goto.assert_called_once_with('https://qa-bk-ca-web.com.rbi.tools/', wait_until='load')
    page.fill.assert_any_call(SELECTORS['email'], email)
    page.fill.assert_any_call(SELECTORS['name'], 'RBI DO NOT MAKE')
    page.click.assert_any_call(SELECTORS['signin_submit'])
    page.click.assert_any_call(SELECTORS['agree_terms'])
    # No site password configured, so the password gate is skipped
    assert all(c.args[0] != SELECTORS['password'] for c in page.fill.call_args_list)


def test_create_account_enters_site_password(tmp_path):
    page = _page()
    agent = SignupAgent(_options(tmp_path, site_password='letmein'))
    agent.create_account(page)
    page.fill.assert_any_call(SELECTORS['password'], 'letmein')


def test_sign_in_reopened_only_when_email_option_missing(tmp_path):
    agent = SignupAgent(_options(tmp_path))

    page = _page()
    sign_in = MagicMock()
    _route_sign_in(page, sign_in)
    page.get_by_role.return_value.is_visible.return_value = True
    agent.create_account(page)
    assert sign_in.click.call_count == 1

    page = _page()
    sign_in = MagicMock()
    _route_sign_in(page, sign_in)
    page.get_by_role.return_value.is_visible.return_value = False
    agent.create_account(page)
    assert sign_in.click.call_count == 2


def test_open_sign_in_forces_intercepted_click(tmp_path):
    page = _page()
    button = MagicMock()
    button.click.side_effect = [PlaywrightError('intercepted'), None]
    _route_sign_in(page, button)

    SignupAgent(_options(tmp_path)).open_sign_in(page)

    assert button.click.call_count == 2
    assert button.click.call_args.kwargs['force'] is True


def test_run_continues_after_failed_account(tmp_path):
    good_first, bad, good_last = _page(), _page(), _page()
    bad.goto.side_effect = PlaywrightError('Timeout 45000ms exceeded')
    agent = SignupAgent(_options(tmp_path), rng=random.Random(3))

    result = agent.run(_browser([good_first, bad, good_last]), 3)

    assert len(result['successes']) == 2
    assert result['failures'] == [{
        'accountIndex': 2,
        'error': 'Failed on account #2: Timeout 45000ms exceeded',
    }]
    bad.screenshot.assert_called_once_with(path=str(tmp_path / 'shots' / 'ERROR-Account-2.png'))
    for page in (good_first, bad, good_last):
        page.close.assert_called_once()
        page.set_default_timeout.assert_called_once_with(1000)


def test_run_skips_close_when_page_already_closed(tmp_path):
    page = _page()
    page.goto.side_effect = PlaywrightError('Target closed')
    page.is_closed.return_value = True

    result = SignupAgent(_options(tmp_path)).run(_browser([page]), 1)

    assert result['successes'] == []
    assert result['failures'][0]['accountIndex'] == 1
    page.screenshot.assert_not_called()
    page.close.assert_not_called()


def test_run_treats_zero_count_as_one(tmp_path):
    result = SignupAgent(_options(tmp_path)).run(_browser([_page()]), 0)
    assert len(result['successes']) == 1


def test_create_signup_accounts_closes_browser(monkeypatch, tmp_path):
    browser = _browser([_page(), _page()])
    context = _playwright_context(browser)
    monkeypatch.setattr(signup_flow, 'sync_playwright', lambda: context)
    monkeypatch.setattr(signup_flow.settings, 'signup_screenshot_dir', str(tmp_path))
    monkeypatch.setattr(signup_flow.settings, 'signup_site_password', None)

    result = signup_flow.create_signup_accounts(2, env='qa', region='ca')

    assert result['requested'] == 2
    assert (result['env'], result['region']) == ('qa', 'ca')
    assert len(result['successes']) == 2
    assert result['failures'] == []
    browser.close.assert_called_once()


def test_create_signup_accounts_closes_browser_on_error(monkeypatch):
    browser = MagicMock()
    browser.new_page.side_effect = RuntimeError('browser crashed')
    context = _playwright_context(browser)
    monkeypatch.setattr(signup_flow, 'sync_playwright', lambda: context)

    with pytest.raises(RuntimeError):
        signup_flow.create_signup_accounts(1)
    browser.close.assert_called_once()


def test_run_records_timeout_setup_failure_against_account(tmp_path):
    broken, good = _page(), _page()
    broken.set_default_timeout.side_effect = PlaywrightError('Target page closed')

    result = SignupAgent(_options(tmp_path)).run(_browser([broken, good]), 2)

    assert len(result['successes']) == 1
    assert result['failures'] == [{'accountIndex': 1, 'error': 'Failed on account #1: Target page closed'}]
    broken.close.assert_called_once()


def test_run_keeps_accounts_in_caller_result_when_browser_dies(tmp_path):
    result = {'successes': [], 'failures': []}
    browser = _browser([_page(), RuntimeError('Target crashed')])

    with pytest.raises(RuntimeError):
        SignupAgent(_options(tmp_path)).run(browser, 3, result)

    assert len(result['successes']) == 1
    assert result['failures'] == []


def test_create_signup_accounts_reports_partial_batch(monkeypatch, tmp_path):
    browser = _browser([_page(), RuntimeError('Target crashed')])
    context = _playwright_context(browser)
    monkeypatch.setattr(signup_flow, 'sync_playwright', lambda: context)
    monkeypatch.setattr(signup_flow.settings, 'signup_screenshot_dir', str(tmp_path))
    monkeypatch.setattr(signup_flow.settings, 'signup_site_password', None)
    logged = []
    sink_id = logger.add(lambda message: logged.append(message.record["message"]), level="INFO")
    try:
        with pytest.raises(SignupBatchError) as exc:
            signup_flow.create_signup_accounts(3)
    finally:
        logger.remove(sink_id)

    assert len(exc.value.successes) == 1
    email = exc.value.successes[0]
    assert email in str(exc.value)
    assert 'Target crashed' in str(exc.value)
    assert f"WORKER: Successful Accounts: {[email]}" in logged
    browser.close.assert_called_once()
