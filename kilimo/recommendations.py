"""
Kilimo AI - Restoration Recommendations
Asks an OpenAI-compatible chat model for species, soil and water
recommendations for a degraded area, with a fixed fallback when the
model is unavailable or replies with something unparseable.
"""

import copy
import json
import logging
import re
import time

from flask import Blueprint, current_app, jsonify, request
from openai import OpenAI

from kilimo.session import api_login_required

logger = logging.getLogger(__name__)

recommendations_bp = Blueprint('recommendations', __name__, url_prefix='/api/ai')

# OpenAI-compatible client, created by init_recommendations
ai_client = None

REQUIRED_FIELDS = ['regionName', 'ndviValue', 'soilHealthScore', 'erosionRiskLevel',
                   'degradationLevel', 'areaHectares']

SYSTEM_PROMPT = "You are an expert environmental scientist specializing in land restoration in Kenya and East Africa."

FALLBACK_RECOMMENDATIONS = {
    'plantSpecies': [
        {
            'name': 'Acacia',
            'scientificName': 'Acacia tortilis',
            'description': 'Drought-resistant native tree excellent for soil stabilization',
            'survivalRate': 80,
            'costPerUnit': 2.0,
            'plantingSeason': 'March-May',
        },
        {
            'name': 'Grevillea',
            'scientificName': 'Grevillea robusta',
            'description': 'Fast-growing tree for erosion control and timber',
            'survivalRate': 85,
            'costPerUnit': 3.5,
            'plantingSeason': 'March-May',
        },
    ],
    'soilTechniques': [
        {
            'name': 'Contour Plowing',
            'description': 'Plowing along contour lines to reduce water runoff and soil erosion',
            'estimatedCost': 5000,
            'priority': 1,
        },
        {
            'name': 'Mulching',
            'description': 'Apply organic mulch to retain moisture and improve soil structure',
            'estimatedCost': 3000,
            'priority': 2,
        },
    ],
    'waterManagement': [
        {
            'name': 'Rainwater Harvesting',
            'description': 'Install water catchment systems to capture and store rainwater',
            'estimatedCost': 8000,
        },
    ],
    'successEstimate': 70,
    'reasoning': 'These recommendations are based on proven techniques for similar degradation '
                 'levels in East African climates.',
}


def init_recommendations(app):
    """Create the chat client when an API key is configured"""
    global ai_client
    api_key = app.config.get('AI_API_KEY')
    if not api_key:
        ai_client = None
        logger.warning("⚠️ No AI API key found, will use fallback recommendations")
        return

    try:
        kwargs = {'api_key': api_key}
        if app.config.get('AI_BASE_URL'):
            kwargs['base_url'] = app.config['AI_BASE_URL']
        ai_client = OpenAI(**kwargs)
        logger.info(f"✅ AI client initialized with model: {app.config.get('AI_MODEL')}")
    except Exception as e:
        logger.error(f"❌ Failed to initialize AI client: {e}")
        ai_client = None


def fallback_recommendations():
    return copy.deepcopy(FALLBACK_RECOMMENDATIONS)


def build_prompt(region):
    return f"""Given the following environmental data for a degraded area:
- Region: {region['regionName']}
- NDVI Value: {region['ndviValue']} (vegetation health indicator, -1 to 1 scale)
- Soil Health Score: {region['soilHealthScore']}/100
- Erosion Risk: {region['erosionRiskLevel']}
- Degradation Level: {region['degradationLevel']}
- Area Size: {region['areaHectares']} hectares
- Climate: {region.get('climate') or 'Tropical/Sub-tropical'}

Provide detailed restoration recommendations in the following JSON format:
{{
  "plantSpecies": [
    {{
      "name": "Common name",
      "scientificName": "Scientific name",
      "description": "Why this species is suitable",
      "survivalRate": 85,
      "costPerUnit": 2.5,
      "plantingSeason": "March-May"
    }}
  ],
  "soilTechniques": [
    {{
      "name": "Technique name",
      "description": "How it helps",
      "estimatedCost": 5000,
      "priority": 1
    }}
  ],
  "waterManagement": [
    {{
      "name": "Water management technique",
      "description": "Implementation details",
      "estimatedCost": 3000
    }}
  ],
  "successEstimate": 75,
  "reasoning": "Brief explanation of why these recommendations will work"
}}

Focus on native Kenyan species and techniques appropriate for the local climate and conditions. \
Provide 3-5 plant species, 2-4 soil conservation techniques, and 2-3 water management strategies."""


def parse_recommendations(text):
    """Pull the outermost JSON object out of a model reply"""
    match = re.search(r'\{[\s\S]*\}', text or '')
    if not match:
        raise ValueError('Failed to parse AI response')

    data = json.loads(match.group(0))
    if not isinstance(data, dict) or not isinstance(data.get('plantSpecies'), list):
        raise ValueError('AI response is missing plantSpecies')
    return data


def generate_restoration_recommendations(region):
    """Recommendations for a region, falling back to defaults on any failure"""
    if ai_client is None:
        return fallback_recommendations()

    model = current_app.config.get('AI_MODEL', 'gpt-4o-mini')
    try:
        logger.info(f"🤖 Requesting recommendations for {region['regionName']} from {model}")
        start_time = time.time()

        completion = ai_client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(region)},
            ],
            max_tokens=current_app.config.get('AI_MAX_TOKENS', 1500),
            temperature=current_app.config.get('AI_TEMPERATURE', 0.7),
        )

        recommendations = parse_recommendations(completion.choices[0].message.content)
        logger.info(f"✅ AI recommendations received in {int((time.time() - start_time) * 1000)}ms")
        return recommendations

    except Exception as e:
        logger.error(f"❌ Error generating AI recommendations: {e}")
        return fallback_recommendations()


def missing_fields(body):
    missing = []
    for field in REQUIRED_FIELDS:
        value = body.get(field)
        if field in ('ndviValue', 'soilHealthScore'):
            if value is None or value == '':
                missing.append(field)
        elif not value:
            missing.append(field)
    return missing


@recommendations_bp.route('/recommendations', methods=['POST'])
@api_login_required
def api_recommendations():
    try:
        body = request.get_json(silent=True) or {}
        if missing_fields(body):
            return jsonify({'success': False, 'error': 'Missing required fields'}), 400

        region = {field: body[field] for field in REQUIRED_FIELDS}
        region['climate'] = body.get('climate')
        return jsonify({'success': True, 'data': generate_restoration_recommendations(region)})

    except Exception:
        logger.exception("Error generating recommendations")
        return jsonify({'success': False, 'error': 'Failed to generate recommendations'}), 500
