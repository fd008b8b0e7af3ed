from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WebSelectors:
    """
    The legacy web banking is server-rendered HTML; its layout changes over time.
    Keep all CSS selectors and form field names here for easy maintenance.
    """

    # Login
    login_form: str = "form#login"
    login_session_id_input: str = "form#login input[name='$sID$']"
    login_token_input: str = "form#login input[name='token']"
    login_session_id_field: str = "$sID$"
    login_token_field: str = "token"
    login_username_field: str = "j_username"
    login_password_field: str = "j_password"
    # Error box shown when the login page is re-rendered after a rejected submit.
    login_error: str = "form#login .errorMessage, div.errorMessage, div.clearfix.error, p.error"

    # MFA confirmation (push to the app on the enrolled device)
    confirm_form: str = "form#confirmForm"
    confirm_xsrf_input: str = "input[name='XSRFPreventionToken']"
    confirm_xsrf_field: str = "XSRFPreventionToken"

    # Financial status overview
    overview_row: str = "tr.mainRow"
    overview_cell: str = "td"
    overview_name: str = "div.forceWrap"
    overview_identifier: str = "div.iban"
    overview_payment_link: str = "a.evt-paymentTransaction"
    overview_depot_link: str = "a.evt-depot"

    # Transaction search page
    account_selected_option: str = "select[name='slAllAccounts'] option[selected]"
    account_select_field: str = "slAllAccounts"
