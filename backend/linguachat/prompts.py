from __future__ import annotations
import json
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel


class ChatContext(BaseModel):
	"""Assignment, character and student details a prompt is built from."""
	language: str = ""
	level: str = ""
	topic: str = ""
	scenario: str = ""
	character_id: str = ""
	character_description: str = ""
	grammar: Optional[str] = None
	vocabulary: Optional[str] = None
	difficulty: Optional[str] = None
	exchanges: int = 0
	current_exchange_count: Optional[int] = None
	student_name: Optional[str] = None
	memory: Optional[str] = None


def _reply_length(level: str) -> str:
	if "Beginner" in level:
		return "1-2 sentences max."
	if "Intermediate" in level:
		return "2-3 sentences max."
	return "3-5 sentences max."


def _lines(*lines: Optional[str]) -> str:
	return "\n".join(line for line in lines if line is not None)


def build_system_instruction(ctx: ChatContext) -> str:
	student = ctx.student_name or "a student"
	is_last_message = (
		ctx.current_exchange_count is not None
		and ctx.exchanges > 0
		and ctx.current_exchange_count == ctx.exchanges - 1
	)
	if ctx.difficulty == "Challenging":
		mode = "- Current Mode: Challenge Mode (Speak slightly above their level)"
	else:
		mode = "- Do NOT use vocabulary or grammar above the student's level."
	profile = _lines(
		"STUDENT PROFILE:",
		f"- Name: {ctx.student_name}" if ctx.student_name else None,
		f"- Proficiency: {ctx.level}",
		mode,
		f"- Personality from past conversations: {ctx.memory}" if ctx.memory else None,
	)
	setting = _lines(
		"YOUR CHARACTER & SETTING:",
		f"- Character: {ctx.character_id} ({ctx.character_description})",
		f"- TOPIC (Stay on this): {ctx.topic}",
		f"- SCENARIO (STRICTLY discuss this only): {ctx.scenario}",
	)
	constraints = _lines(
		"CONVERSATION CONSTRAINTS:",
		f"- Length: Exactly {ctx.exchanges} exchanges.",
		f"- You MUST include this vocabulary: {ctx.vocabulary} (don't bold these words)" if ctx.vocabulary else None,
		f"- You MUST use these grammar(s): {ctx.grammar} (don't bold these words)" if ctx.grammar else None,
	)
	rules = _lines(
		"STRICT RULES:",
		f"* INTERNALIZE THE CHARACTER: You are NOT an AI tutor. You are {ctx.character_id} in the scenario.",
		f"* LANGUAGE: Speak ONLY in {ctx.language}. No English.",
		f"* RESPONSE LENGTH: {_reply_length(ctx.level)}",
		"* DRIVE THE CONVERSATION: Make sure the conversation always stays on the given topic and scenario. DO NOT discuss anything else!",
		f"* NO DRIFTING: If the student tries to change the topic or gives a short answer, pull them back into the {ctx.topic} scenario immediately.",
		'* NO REPEATING GREETINGS: Do not greet the student again if the conversation has already started.',
		"THE CONVERSATION IS OVER. Wrap up and say goodbye. Do NOT ask a follow-up question." if is_last_message else None,
	)
	intro = (
		f"You are {ctx.character_id} (a speaker of {ctx.language}). You are currently in a conversation with {student}, "
		f"with the goal of improving their {ctx.language} speaking skills."
	)
	return "\n\n".join([intro, profile, setting, constraints, rules])


def build_greeting_message(ctx: ChatContext) -> str:
	# Stands in for the student's first line so the model opens the scene itself
	student = ctx.student_name or "the student"
	return (
		f"Start the conversation now. Greet {student} in character, in {ctx.language} only, "
		"and open the scenario with your first line. Do not ask whether they are ready."
	)


def _transcript_json(history: Sequence[Dict[str, str]]) -> str:
	return json.dumps([{"role": t.get("role"), "text": t.get("text")} for t in history], ensure_ascii=False)


def build_feedback_prompt(ctx: ChatContext, history: Sequence[Dict[str, str]]) -> str:
	return _lines(
		"You are an expert language tutor. In English, analyze this conversation history between a student and an AI:",
		_transcript_json(history),
		"",
		f"Task: Provide 3 specific strengths and 3 specific areas for improvement for a {ctx.level} student. "
		"Be specific, concise and constructive. Be informal but focused in your tone.",
		"Also, provide 3 key SPECIFIC characteristics/personality traits of the student based on the conversation, "
		"NOT RELATED TO THE SPECIFIC TOPIC/THEME ITSELF. This will help tailor future conversations about other topics. "
		"Each one can be up to a sentence long. Refer to student in third person.",
		"Do NOT include slashes or markdown formatting in your response.",
		"",
		f"Student Language Level: {ctx.level}",
		"Difficulty level: Challenging" if ctx.difficulty == "Challenging" else None,
		f"Language: {ctx.language}",
		f"Topic: {ctx.topic}",
		f"Grammar needed to have been used: {ctx.grammar}" if ctx.grammar else None,
		f"Vocabulary needed to have been used: {ctx.vocabulary}" if ctx.vocabulary else None,
		"",
		"Other than specific quotes from the conversation, all text in the JSON object should be in English.",
		"",
		"IMPORTANT: Return ONLY a JSON object with this structure:",
		'{"strengths": ["string", "string", "string"], "improvements": ["string", "string", "string"], '
		'"personality_traits": ["string", "string", "string"]}',
	)


def build_assignment_overview_prompt(feedback: List[Dict[str, Any]]) -> str:
	return _lines(
		"Analyze this feedback across all students for a foreign language learning assignment.",
		"Identify 3 common strengths and 3 common weaknesses across all students.",
		"",
		f"Data: {json.dumps(feedback, ensure_ascii=False)}",
		"",
		"Return ONLY a plain JSON object. Do not include markdown formatting.",
		'Structure: {"strengths": ["string", "string", "string"], "weaknesses": ["string", "string", "string"]}',
	)


def build_student_overview_prompt(feedback: List[Dict[str, Any]]) -> str:
	return _lines(
		"You are an expert foreign language tutor. Analyze this student's feedback across multiple assignments:",
		json.dumps(feedback, ensure_ascii=False),
		"",
		"Based on this data, provide:",
		"1. Exactly 3 high-level strengths.",
		"2. Exactly 3 high-level areas for growth.",
		"",
		'Format the output as a JSON object strictly like this: {"strengths": ["string", "string", "string"], '
		'"weaknesses": ["string", "string", "string"]}',
	)
