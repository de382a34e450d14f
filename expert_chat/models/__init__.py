"""SQLAlchemy models package."""

from expert_chat.models.persona import Persona
from expert_chat.models.provider import AIModel, Provider
from expert_chat.models.skill import PersonaSkill, Skill, SkillParameter, SkillTool
from expert_chat.models.topic import Topic, TopicStatus
from expert_chat.models.turn import Turn, TurnRole
from expert_chat.models.user import User, UserProfile

__all__ = [
    "Persona",
    "Provider",
    "AIModel",
    "Skill",
    "SkillTool",
    "SkillParameter",
    "PersonaSkill",
    "Topic",
    "TopicStatus",
    "Turn",
    "TurnRole",
    "User",
    "UserProfile",
]
