from study_job_client.config import StudyJobSettings, configure_logging
from study_job_client.models import JobKind


def test_default_policies_per_kind():
    settings = StudyJobSettings(_env_file=None)

    generation = settings.policy_for(JobKind.generation)
    text = settings.policy_for(JobKind.text_extraction)
    topics = settings.policy_for(JobKind.topic_extraction)

    assert (generation.interval_ms, generation.max_attempts) == (5000, 60)
    assert (text.interval_ms, text.max_attempts) == (1000, 60)
    assert (topics.interval_ms, topics.max_attempts) == (2000, 60)
    assert {p.required_stable_reads for p in (generation, text, topics)} == {1}


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("STUDY_JOBS_API_BASE_URL", "https://api.example.test")
    monkeypatch.setenv("STUDY_JOBS_TOPIC_EXTRACTION__REQUIRED_STABLE_READS", "3")
    monkeypatch.setenv("STUDY_JOBS_GENERATION__INTERVAL_MS", "250")

    settings = StudyJobSettings(_env_file=None)

    assert settings.api_base_url == "https://api.example.test"
    assert settings.policy_for(JobKind.topic_extraction).required_stable_reads == 3
    assert settings.policy_for(JobKind.topic_extraction).interval_ms == 2000
    assert settings.policy_for(JobKind.generation).interval_ms == 250
    assert settings.policy_for(JobKind.generation).max_attempts == 60


def test_configure_logging_accepts_lowercase_level():
    configure_logging("debug")
    configure_logging("INFO")
