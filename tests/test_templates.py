from helpdesk_jobs.templates import DEFAULT_SUBJECT, render_otp_email


def test_otp_email_contains_code_and_logo():
    email = render_otp_email("012345", "ana", purpose="register", logo_url="https://cdn.test/logo.png")

    assert "012345" in email.html
    assert "012345" in email.text
    assert '<img src="https://cdn.test/logo.png"' in email.html
    assert "Hi ana," in email.text
    assert email.subject == "Verify your email address"


def test_logo_hidden_without_url_or_when_disabled():
    no_url = render_otp_email("1", "ana", logo_url="", brand_name="Acme Support")
    disabled = render_otp_email("1", "ana", logo_url="https://cdn.test/logo.png", show_logo=False)

    assert "<img" not in no_url.html
    assert "Acme Support" in no_url.html
    assert "<img" not in disabled.html


def test_unknown_purpose_uses_default_subject():
    assert render_otp_email("1", "ana", purpose="something").subject == DEFAULT_SUBJECT
    assert render_otp_email("1", "ana").subject == DEFAULT_SUBJECT


def test_username_is_escaped_in_html():
    email = render_otp_email("1", "<script>x</script>")
    assert "<script>" not in email.html
    assert "&lt;script&gt;" in email.html
